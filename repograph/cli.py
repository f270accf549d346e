"""Typer-based CLI for the repograph hybrid retrieval engine."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, config, config_manager
from .embeddings import get_embedder
from .errors import RepographError
from .loader import KnowledgeBaseLoader
from .storage import GraphStore
from .tools import RepositoryTools

app = typer.Typer(
    help="repograph: hybrid retrieval over multi-repository code knowledge.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Show or change retrieval settings.", no_args_is_help=True)
app.add_typer(config_app, name="config")

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"repograph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """repograph: ranked, explainable answers from indexed repositories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _settings() -> config_manager.RetrievalSettings:
    try:
        return config_manager.load_retrieval_config()
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid configuration: {exc}")


def _open_store(settings: config_manager.RetrievalSettings) -> GraphStore:
    config.ensure_base_dirs()
    return GraphStore(config.DATA_DIR, vector_backend=settings.vector_backend)


def _fail_on_error(payload: Dict[str, Any]) -> None:
    if "error" in payload:
        error = payload["error"]
        typer.echo(f"Error [{error['code']}]: {error['message']}", err=True)
        raise typer.Exit(code=1)


def _print_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command("query")
def query(
    text: str = typer.Argument(..., help="Natural-language or identifier query."),
    repo: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="Restrict to repository (repeatable)."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum results."),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", min=1, help="Response token budget."),
    explain: bool = typer.Option(False, "--explain", help="Show per-source score breakdown."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result envelope."),
):
    """Run a hybrid query across the indexed repositories."""
    settings = _settings()
    store = _open_store(settings)
    tools = RepositoryTools(store, settings=settings)
    try:
        payload = tools.query_repositories(
            text, repositories=repo, max_tokens=max_tokens, limit=limit, explain=explain,
        )
    finally:
        tools.close()
        store.close()
    _fail_on_error(payload)

    if as_json:
        _print_json(payload)
        return

    analysis = payload["analysis"]
    console.print(
        f"[bold]{analysis['query_type']}[/bold] (confidence {analysis['confidence']:.2f}) "
        f"[dim]{analysis['reasoning']}[/dim]"
    )
    if not payload["results"]:
        console.print("[yellow]No results.[/yellow]")
    else:
        table = Table(show_lines=False)
        table.add_column("#", style="dim", width=4)
        table.add_column("Score", justify="right", style="green", width=7)
        table.add_column("Chunk", style="cyan")
        table.add_column("Sources", style="magenta")
        table.add_column("Content", min_width=30)
        for i, result in enumerate(payload["results"], 1):
            snippet = result["content"].strip().splitlines()[0] if result["content"].strip() else ""
            table.add_row(
                str(i),
                f"{result['fused_score']:.3f}",
                result["chunk_id"],
                ", ".join(sorted(result["per_source_scores"])),
                snippet[:80],
            )
        console.print(table)

    for line in payload.get("explanations", []):
        console.print(f"[dim]{line}[/dim]")

    degraded = [
        f"{name} ({cov['status']})"
        for name, cov in payload["coverage"].items()
        if cov["status"] in ("degraded", "failed", "timeout")
    ]
    if degraded:
        console.print(f"[yellow]Degraded sources: {', '.join(degraded)}[/yellow]")
    console.print(f"[dim]{payload['metrics']['total'] * 1000:.1f} ms[/dim]")


@app.command("dependency")
def dependency(
    entity: str = typer.Argument(..., help="Entity id or qualified name."),
    depth: Optional[int] = typer.Option(None, "--depth", "-d", min=0, help="Maximum hops."),
    repo: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="Restrict results to repository."),
    direction: str = typer.Option("outgoing", "--direction", help="outgoing, incoming or both."),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON."),
):
    """Show entities reachable from ENTITY."""
    settings = _settings()
    store = _open_store(settings)
    tools = RepositoryTools(store, settings=settings)
    try:
        payload = tools.query_dependency(entity, depth=depth, repositories=repo, direction=direction)
    finally:
        tools.close()
        store.close()
    _fail_on_error(payload)

    if as_json:
        _print_json(payload)
        return

    root = payload["root"]
    console.print(f"[bold]{root['qualname']}[/bold] [dim]({root['entity_id']})[/dim]")
    if not payload["entities"]:
        console.print("[yellow]No dependencies within depth.[/yellow]")
        return
    for hit in payload["entities"]:
        indent = "  " * hit["hops"]
        console.print(
            f"{indent}|- {hit['entity']['entity_id']} "
            f"[dim]hops={hit['hops']} strength={hit['path_strength']:.2f}[/dim]"
        )


@app.command("xrefs")
def xrefs(
    entity: str = typer.Argument(..., help="Entity id or qualified name."),
    min_strength: Optional[float] = typer.Option(
        None, "--min-strength", min=0.0, max=1.0, help="Minimum edge strength (default: 0.7).",
    ),
    repo: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="Only edges touching repository."),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON."),
):
    """List cross-repository references around ENTITY."""
    settings = _settings()
    store = _open_store(settings)
    tools = RepositoryTools(store, settings=settings)
    try:
        payload = tools.get_cross_references(entity, min_strength=min_strength, repositories=repo)
    finally:
        tools.close()
        store.close()
    _fail_on_error(payload)

    if as_json:
        _print_json(payload)
        return
    if not payload["cross_references"]:
        console.print("[yellow]No cross-repository references.[/yellow]")
        return

    table = Table(title=f"Cross-references for {entity}")
    table.add_column("From", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("To", style="cyan")
    table.add_column("Strength", justify="right", style="green")
    for ref in payload["cross_references"]:
        table.add_row(
            f"{ref['from_repo']}:{ref['from_entity']}",
            ref["kind"],
            f"{ref['to_repo']}:{ref['to_entity']}",
            f"{ref['strength']:.2f}",
        )
    console.print(table)


@app.command("repos")
def repos(as_json: bool = typer.Option(False, "--json", help="Print raw JSON.")):
    """List indexed repositories."""
    settings = _settings()
    store = _open_store(settings)
    try:
        repositories = store.list_repositories()
    finally:
        store.close()

    if as_json:
        _print_json({"repositories": [asdict(r) for r in repositories]})
        return
    if not repositories:
        typer.echo("No repositories indexed yet.")
        raise typer.Exit(code=0)

    table = Table(title="Repositories")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="dim")
    table.add_column("Entities", justify="right", style="green")
    table.add_column("Chunks", justify="right", style="green")
    table.add_column("Indexed", style="dim")
    for r in repositories:
        table.add_row(
            r.repo_id, r.name, r.version or "-", str(r.entity_count), str(r.chunk_count),
            r.indexed_at or "-",
        )
    console.print(table)


@app.command("load")
def load(
    export_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON export to import."),
    embed: bool = typer.Option(True, "--embed/--no-embed", help="Embed chunks that have no embedding."),
):
    """Import repositories, entities, relationships and chunks from JSON."""
    settings = _settings()
    store = _open_store(settings)
    embedder = get_embedder(store.embedding_dim() or settings.embedding_dim) if embed else None
    try:
        stats = KnowledgeBaseLoader(store, embedder).load_file(export_file)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"'{export_file}' is not valid JSON: {exc}")
    except RepographError as exc:
        typer.echo(f"Error [{exc.code}]: {exc.message}", err=True)
        raise typer.Exit(code=1)
    finally:
        store.close()

    typer.echo(
        f"Loaded {stats['repositories']} repositories, {stats['entities']} entities, "
        f"{stats['relationships']} relationships, {stats['chunks']} chunks."
    )


@app.command("rebuild-index")
def rebuild_index():
    """Rebuild the vector index from the embeddings stored in SQLite."""
    settings = _settings()
    store = _open_store(settings)
    try:
        count = store.rebuild_vector_index()
    finally:
        store.close()
    typer.echo(f"Indexed {count} chunk embeddings.")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------

@config_app.command("show")
def config_show():
    """Print the effective retrieval settings."""
    settings = _settings()
    table = Table(title="Retrieval settings", show_header=False)
    table.add_column(style="cyan")
    table.add_column()
    for key, value in settings.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name, e.g. vector_backend."),
    value: str = typer.Argument(..., help="New value."),
):
    """Persist one retrieval setting to config.toml."""
    try:
        config_manager.set_retrieval_value(key, value)
    except KeyError:
        raise typer.BadParameter(f"Unknown setting '{key}'.")
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(f"Set {key} = {value}")


if __name__ == "__main__":
    app()
