"""Protocol-facing tool surface.

Four logical operations, each returning a JSON-serialisable dict.  Failures
come back as ``{"error": {"code": ..., "message": ...}}`` so a protocol
server can forward them unchanged; ``ALL_STRATEGIES_FAILED`` in particular
lets a caller tell a degraded system apart from a query with no matches.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .config_manager import RetrievalSettings
from .errors import InvalidQuery, RepographError
from .orchestrator import QueryOrchestrator
from .query_analyzer import WEIGHT_PROFILE_VERSION
from .storage import GraphStore

logger = logging.getLogger(__name__)

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "query_repositories",
        "description": (
            "Search indexed repositories with hybrid retrieval (semantic, "
            "keyword, pattern and graph), fused into one ranked list."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural-language or identifier query"},
                "repositories": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Optional: limit search to specific repositories",
                },
                "maxTokens": {
                    "type": "number",
                    "description": "Maximum tokens in response (default: 500)",
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "query_dependency",
        "description": "Entities reachable from an entity through relationship edges.",
        "input_schema": {
            "type": "object",
            "properties": {
                "entity": {"type": "string", "description": "Entity id or qualified name"},
                "depth": {"type": "number", "description": "Maximum hops (default: 2)"},
                "repositories": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["entity"],
        },
    },
    {
        "name": "get_cross_references",
        "description": "Relationships between an entity and entities in other repositories.",
        "input_schema": {
            "type": "object",
            "properties": {
                "entity": {"type": "string", "description": "Entity id or qualified name"},
                "minStrength": {
                    "type": "number",
                    "description": "Minimum relationship strength (0-1, default: 0.7)",
                },
                "repositories": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["entity"],
        },
    },
    {
        "name": "list_repositories",
        "description": "List indexed repositories with entity and chunk counts.",
        "input_schema": {"type": "object", "properties": {}},
    },
]


def _error(exc: RepographError) -> Dict[str, Any]:
    return {"error": exc.to_dict()}


def _optional_number(value: Any, name: str, cast: Callable[[Any], Any]) -> Any:
    # JSON numbers may arrive as floats
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidQuery(f"{name} must be a number", {name: value})
    try:
        return cast(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise InvalidQuery(f"{name} must be a number", {name: value}) from exc


class RepositoryTools:
    """The four operations exposed to a protocol server."""

    def __init__(
        self,
        store: GraphStore,
        orchestrator: Optional[QueryOrchestrator] = None,
        settings: Optional[RetrievalSettings] = None,
    ) -> None:
        self.store = store
        self.settings = settings or RetrievalSettings()
        self.orchestrator = orchestrator or QueryOrchestrator.from_settings(store, self.settings)

    def close(self) -> None:
        self.orchestrator.close()

    def query_repositories(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        max_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        explain: bool = False,
    ) -> Dict[str, Any]:
        try:
            envelope = self.orchestrator.query(
                query,
                repositories=repositories,
                max_tokens=(self.settings.max_tokens or None) if max_tokens is None else max_tokens,
                limit=limit,
                explain=explain,
            )
        except RepographError as exc:
            logger.warning("query_repositories failed: %s", exc.message)
            return _error(exc)
        payload = envelope.to_dict()
        payload["weight_profile_version"] = WEIGHT_PROFILE_VERSION
        return payload

    def query_dependency(
        self,
        entity: str,
        depth: Optional[int] = None,
        repositories: Optional[Iterable[str]] = None,
        direction: str = "outgoing",
    ) -> Dict[str, Any]:
        try:
            if depth is not None and depth < 0:
                raise InvalidQuery("depth must be >= 0", {"depth": depth})
            if direction not in ("outgoing", "incoming", "both"):
                raise InvalidQuery(f"Unknown direction: '{direction}'")
            report = self.orchestrator.expander.dependencies(
                entity, depth=depth, repositories=repositories, direction=direction,
            )
        except RepographError as exc:
            logger.warning("query_dependency failed: %s", exc.message)
            return _error(exc)
        return report.to_dict()

    def get_cross_references(
        self,
        entity: str,
        min_strength: Optional[float] = None,
        repositories: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        try:
            if min_strength is not None and not 0.0 <= min_strength <= 1.0:
                raise InvalidQuery("min_strength must be within [0, 1]", {"min_strength": min_strength})
            refs = self.orchestrator.expander.cross_references(
                entity, min_strength=min_strength, repositories=repositories,
            )
        except RepographError as exc:
            logger.warning("get_cross_references failed: %s", exc.message)
            return _error(exc)
        return {
            "entity": entity,
            "min_strength": (
                self.orchestrator.expander.xref_min_strength if min_strength is None else min_strength
            ),
            "cross_references": [ref.to_dict() for ref in refs],
        }

    def list_repositories(self) -> Dict[str, Any]:
        return {"repositories": [asdict(repo) for repo in self.store.list_repositories()]}

    # ------------------------------------------------------------------
    # Dispatch by tool name, with protocol-style (camelCase) arguments
    # ------------------------------------------------------------------

    def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        args = dict(arguments or {})
        try:
            max_tokens = _optional_number(args.get("maxTokens"), "maxTokens", int)
            depth = _optional_number(args.get("depth"), "depth", int)
            min_strength = _optional_number(args.get("minStrength"), "minStrength", float)
        except InvalidQuery as exc:
            logger.warning("%s rejected: %s", name, exc.message)
            return _error(exc)
        handlers: Dict[str, Callable[[], Dict[str, Any]]] = {
            "query_repositories": lambda: self.query_repositories(
                args.get("query", ""),
                repositories=args.get("repositories"),
                max_tokens=max_tokens,
            ),
            "query_dependency": lambda: self.query_dependency(
                args.get("entity") or args.get("dependency", ""),
                depth=depth,
                repositories=args.get("repositories"),
            ),
            "get_cross_references": lambda: self.get_cross_references(
                args.get("entity", ""),
                min_strength=min_strength,
                repositories=args.get("repositories"),
            ),
            "list_repositories": self.list_repositories,
        }
        handler = handlers.get(name)
        if handler is None:
            return _error(InvalidQuery(f"Unknown tool: '{name}'"))
        return handler()
