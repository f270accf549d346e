"""Chunk vector index backed by LanceDB, a serverless local-first vector database.

LanceDB is the nearest-neighbour half of the storage layer.  SQLite stays the
source of truth for chunks (embeddings included), so this index can always be
rebuilt from it; see :meth:`repograph.storage.GraphStore.rebuild_vector_index`.

Schema per row:

========= ============ =====================================
Column    Type         Description
========= ============ =====================================
id        utf8         Chunk identifier
vector    float32[dim] Embedding vector
repo      utf8         Owning repository
entity_id utf8         Owning entity ("" when none)
chunk_type utf8        Chunk kind
========= ============ =====================================
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import lancedb  # type: ignore[import-untyped]
import pyarrow as pa  # type: ignore[import-untyped]

from .models import Chunk

logger = logging.getLogger(__name__)

TABLE_NAME = "chunk_vectors"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _schema(dim: int) -> "pa.Schema":
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dim)),
        pa.field("repo", pa.utf8()),
        pa.field("entity_id", pa.utf8()),
        pa.field("chunk_type", pa.utf8()),
    ])


class VectorStore:
    """LanceDB table of chunk embeddings searched with the cosine metric."""

    def __init__(self, store_dir: Path, table_name: str = TABLE_NAME) -> None:
        self.store_dir = store_dir
        self._lance_dir = store_dir / "lancedb"
        self._lance_dir.mkdir(exist_ok=True, parents=True)
        self._table_name = table_name
        self._write_lock = threading.Lock()

        self._db: Any = lancedb.connect(str(self._lance_dir))
        self._table: Optional[Any] = None

        if self._table_name in self._db.table_names():
            self._table = self._db.open_table(self._table_name)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Add or replace the embeddings of *chunks* (unembedded ones are skipped)."""
        rows = [
            {
                "id": chunk.chunk_id,
                "vector": [float(v) for v in chunk.embedding],
                "repo": chunk.repo,
                "entity_id": chunk.entity_id or "",
                "chunk_type": chunk.chunk_type,
            }
            for chunk in chunks
            if chunk.embedding
        ]
        if not rows:
            return 0

        with self._write_lock:
            if self._table is None:
                # First insert creates the table; the vector width is fixed from here on
                data = pa.Table.from_pylist(rows, schema=_schema(len(rows[0]["vector"])))
                self._table = self._db.create_table(self._table_name, data=data, mode="overwrite")
            else:
                ids = ", ".join(_quote(row["id"]) for row in rows)
                self._table.delete(f"id IN ({ids})")
                self._table.add(rows)
        return len(rows)

    def clear(self) -> None:
        """Drop all data; the table is recreated on the next insert."""
        with self._write_lock:
            if self._table is not None:
                self._db.drop_table(self._table_name)
                logger.debug("Dropped vector table %s", self._table_name)
            self._table = None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_embedding: Sequence[float],
        repositories: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> List[Tuple[str, float]]:
        """Nearest neighbours of *query_embedding*.

        Returns ``(chunk_id, cosine_distance)`` pairs, closest first.  With the
        cosine metric ``_distance`` is ``1 - cos_sim``, so values are in
        ``[0, 2]``.
        """
        if self._table is None:
            return []

        query = (
            self._table
            .search(list(query_embedding))
            .distance_type("cosine")
            .limit(limit)
        )
        repos = sorted(set(repositories)) if repositories else []
        if repos:
            clause = ", ".join(_quote(r) for r in repos)
            query = query.where(f"repo IN ({clause})", prefilter=True)

        return [
            (row["id"], float(row.get("_distance", 0.0)))
            for row in query.to_list()
        ]

    # ------------------------------------------------------------------
    # Informational
    # ------------------------------------------------------------------

    def count(self) -> int:
        """Number of rows in the vector index."""
        if self._table is None:
            return 0
        return self._table.count_rows()

    def describe(self) -> Dict[str, Any]:
        return {
            "backend": "lance",
            "path": str(self._lance_dir),
            "table": self._table_name,
            "rows": self.count(),
        }
