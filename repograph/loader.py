"""Import a JSON knowledge-base export through the batch write path."""

from __future__ import annotations

import json
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from .embeddings import EmbeddingProvider
from .errors import DataIntegrityError
from .models import Chunk, Entity, Relationship, Repository
from .storage import GraphStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build(cls: Type[T], record: Dict[str, Any], section: str) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    try:
        return cls(**{k: v for k, v in record.items() if k in known})
    except (TypeError, ValueError) as exc:
        raise DataIntegrityError(f"Malformed {section} record: {exc}", {"record": record}) from exc


class KnowledgeBaseLoader:
    """Writes repositories, entities, edges and chunks into a :class:`GraphStore`.

    Expected payload::

        {
          "repositories":  [{"repo_id": ..., "name": ...}, ...],
          "entities":      [{"entity_id": ..., "repo": ..., "name": ...}, ...],
          "relationships": [{"src": ..., "dst": ..., "kind": ..., "strength": ...}, ...],
          "chunks":        [{"chunk_id": ..., "repo": ..., "content": ...}, ...]
        }

    Everything is written in one transaction, so a rejected record leaves the
    store untouched.  Chunks without an embedding are embedded when an
    embedder is given.
    """

    def __init__(self, store: GraphStore, embedder: Optional[EmbeddingProvider] = None):
        self.store = store
        self.embedder = embedder

    def load_file(self, path: Path) -> Dict[str, int]:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        return self.load(payload)

    def load(self, payload: Dict[str, Any]) -> Dict[str, int]:
        repos = [_build(Repository, r, "repository") for r in payload.get("repositories", [])]
        entities = [_build(Entity, e, "entity") for e in payload.get("entities", [])]
        edges = [
            _build(Relationship, e, "relationship")
            for e in payload.get("relationships", payload.get("edges", []))
        ]
        chunks: List[Chunk] = [_build(Chunk, c, "chunk") for c in payload.get("chunks", [])]

        if self.embedder is not None:
            for chunk in chunks:
                if chunk.embedding is None:
                    chunk.embedding = self.embedder.embed_text(chunk.content)
            model_key = getattr(self.embedder, "model_key", type(self.embedder).__name__)
            for repo in repos:
                repo.embedding_model = repo.embedding_model or model_key

        self.store.ingest(repos, entities, edges, chunks)

        stats = {
            "repositories": len(repos),
            "entities": len(entities),
            "relationships": len(edges),
            "chunks": len(chunks),
        }
        logger.info("Loaded %s", ", ".join(f"{v} {k}" for k, v in stats.items()))
        return stats
