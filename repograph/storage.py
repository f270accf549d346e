"""Storage layer for the multi-repository knowledge base.

Architecture:
- **SQLite** is the source of truth for repositories, entities, relationship
  edges and text chunks (embeddings included), plus an FTS5 index for
  lexical search.
- **LanceDB** (via :class:`~repograph.vector_store.VectorStore`) serves
  nearest-neighbour search when ``vector_backend="lance"``.  With
  ``"exact"`` the embeddings stored in SQLite are scanned directly, and with
  ``"none"`` the vector capability is absent.

Reads open a short-lived connection each, so retrieval strategies can query
concurrently from worker threads without locking.  All writes go through one
writer connection and each batch is a single transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .embeddings import cosine_distance, validate_embedding
from .errors import CapabilityUnavailable, DataIntegrityError
from .lexical import (
    content_terms,
    escape_like,
    glob_to_like,
    glob_to_regex,
    tokenize,
    trigram_similarity,
)
from .models import Chunk, Entity, Relationship, Repository

logger = logging.getLogger(__name__)

VECTOR_BACKENDS = ("lance", "exact", "none")

# Specificity order of pattern matches, most specific first.
MATCH_KINDS = ("exact", "qualified", "prefix", "substring", "wildcard", "fuzzy")

# Minimum trigram similarity for a fuzzy entity-name match.
FUZZY_THRESHOLD = 0.5

_READ_TIMEOUT = 5.0

_CHUNK_COLUMNS = "c.chunk_id, c.repo, c.entity_id, c.chunk_type, c.content, c.metadata"


def _repo_clause(column: str, repositories: Optional[Iterable[str]]) -> Tuple[str, List[str]]:
    """``AND column IN (...)`` for a repository filter (empty when unfiltered)."""
    repos = sorted(set(repositories)) if repositories else []
    if not repos:
        return "", []
    return f" AND {column} IN ({','.join('?' * len(repos))})", repos


def _row_to_chunk(row: sqlite3.Row, with_embedding: bool = False) -> Chunk:
    embedding = None
    if with_embedding and row["embedding"]:
        embedding = json.loads(row["embedding"])
    return Chunk(
        chunk_id=row["chunk_id"],
        repo=row["repo"],
        content=row["content"],
        entity_id=row["entity_id"],
        chunk_type=row["chunk_type"],
        embedding=embedding,
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        entity_id=row["entity_id"],
        repo=row["repo"],
        name=row["name"],
        qualname=row["qualname"],
        kind=row["kind"],
        file_path=row["file_path"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )


class GraphStore:
    """SQLite store of entities, edges and chunks with an optional vector index."""

    def __init__(self, store_dir: Path, vector_backend: str = "lance") -> None:
        if vector_backend not in VECTOR_BACKENDS:
            raise ValueError(
                f"Unknown vector backend: '{vector_backend}'. "
                f"Available: {', '.join(VECTOR_BACKENDS)}"
            )
        self.store_dir = store_dir
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = store_dir / "graph.db"
        self.vector_backend = vector_backend

        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.fts_enabled = False
        self._init_schema()

        self.vector_store = None
        if vector_backend == "lance":
            from .vector_store import VectorStore

            self.vector_store = VectorStore(store_dir)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            cur = self.conn.cursor()
            cur.execute("""
                CREATE TABLE IF NOT EXISTS repositories (
                    repo_id         TEXT PRIMARY KEY,
                    name            TEXT NOT NULL,
                    version         TEXT,
                    branch          TEXT,
                    commit_hash     TEXT,
                    indexed_at      TEXT,
                    embedding_model TEXT,
                    metadata        TEXT
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    entity_id TEXT PRIMARY KEY,
                    repo      TEXT NOT NULL,
                    name      TEXT NOT NULL,
                    qualname  TEXT NOT NULL,
                    kind      TEXT NOT NULL,
                    file_path TEXT,
                    metadata  TEXT
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS edges (
                    src      TEXT NOT NULL REFERENCES entities(entity_id),
                    dst      TEXT NOT NULL REFERENCES entities(entity_id),
                    kind     TEXT NOT NULL,
                    strength REAL NOT NULL CHECK (strength >= 0 AND strength <= 1),
                    PRIMARY KEY (src, dst, kind)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    chunk_id   TEXT PRIMARY KEY,
                    repo       TEXT NOT NULL,
                    entity_id  TEXT,
                    chunk_type TEXT NOT NULL,
                    content    TEXT NOT NULL,
                    embedding  TEXT,
                    metadata   TEXT
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS store_meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_src ON edges(src)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_dst ON edges(dst)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_qualname ON entities(qualname)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_chunks_repo ON chunks(repo)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_chunks_entity ON chunks(entity_id)")
            try:
                cur.execute("""
                    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                        chunk_id UNINDEXED,
                        content,
                        tokenize = 'porter unicode61'
                    )
                """)
                self.fts_enabled = True
            except sqlite3.OperationalError as exc:
                logger.warning(
                    "FTS5 unavailable, lexical search uses term-frequency scan: %s", exc,
                )

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        """Short-lived read-only connection, safe to use from any thread."""
        conn = sqlite3.connect(str(self.db_path), timeout=_READ_TIMEOUT)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA query_only = ON")
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Capability probe / metadata
    # ------------------------------------------------------------------

    def has_vector_capability(self) -> bool:
        return self.vector_backend != "none"

    def embedding_dim(self) -> Optional[int]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT value FROM store_meta WHERE key = 'embedding_dim'"
            ).fetchone()
        return int(row["value"]) if row else None

    def stats(self) -> Dict[str, Any]:
        with self._reader() as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("repositories", "entities", "edges", "chunks")
            }
            counts["embedded_chunks"] = conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE embedding IS NOT NULL"
            ).fetchone()[0]
        counts["vector_backend"] = self.vector_backend
        counts["fts_enabled"] = self.fts_enabled
        return counts

    # ------------------------------------------------------------------
    # Writes (ingestion path, never interleaved with a torn read)
    # ------------------------------------------------------------------

    def insert_edges(self, edges: Iterable[Relationship]) -> int:
        """Insert relationship edges in one transaction.

        Raises:
            DataIntegrityError: an endpoint does not exist; nothing is written.
        """
        edge_list = list(edges)
        if not edge_list:
            return 0
        with self._lock, self.conn:
            self._write_edges(edge_list)
        return len(edge_list)

    def batch_insert_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Insert chunks atomically; a failure mid-batch leaves no partial rows.

        All embeddings must share the store's dimensionality, which is fixed
        by the first embedded chunk ever written.

        Raises:
            DataIntegrityError: an embedding is malformed or has the wrong
                dimensionality; nothing is written.
        """
        chunk_list = list(chunks)
        if not chunk_list:
            return 0
        with self._lock, self.conn:
            self._write_chunks(chunk_list)
        self._sync_vectors(chunk_list)
        return len(chunk_list)

    def ingest(
        self,
        repositories: Iterable[Repository],
        entities: Iterable[Entity],
        edges: Iterable[Relationship],
        chunks: Iterable[Chunk],
    ) -> None:
        """Write a whole batch in a single transaction.

        Entities land before edges so endpoints resolve.  Any
        :class:`DataIntegrityError` rolls back every table.
        """
        chunk_list = list(chunks)
        with self._lock, self.conn:
            self._write_repositories(list(repositories))
            self._write_entities(list(entities))
            self._write_edges(list(edges))
            self._write_chunks(chunk_list)
        self._sync_vectors(chunk_list)

    # Row writers; callers hold the lock and an open transaction.

    def _write_repositories(self, repos: List[Repository]) -> None:
        self.conn.executemany(
            """
            INSERT OR REPLACE INTO repositories (
                repo_id, name, version, branch, commit_hash,
                indexed_at, embedding_model, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    r.repo_id, r.name, r.version, r.branch,
                    r.commit_hash, r.indexed_at, r.embedding_model,
                    json.dumps(r.metadata) if r.metadata else None,
                )
                for r in repos
            ],
        )

    def _write_entities(self, entities: List[Entity]) -> None:
        self.conn.executemany(
            """
            INSERT OR REPLACE INTO entities (
                entity_id, repo, name, qualname, kind, file_path, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    e.entity_id, e.repo, e.name, e.qualname, e.kind, e.file_path,
                    json.dumps(e.metadata) if e.metadata else None,
                )
                for e in entities
            ],
        )

    def _write_edges(self, edge_list: List[Relationship]) -> None:
        if not edge_list:
            return
        endpoints = sorted({e.src for e in edge_list} | {e.dst for e in edge_list})
        known: Set[str] = set()
        for i in range(0, len(endpoints), 500):
            batch = endpoints[i:i + 500]
            rows = self.conn.execute(
                f"SELECT entity_id FROM entities WHERE entity_id IN ({','.join('?' * len(batch))})",
                batch,
            ).fetchall()
            known.update(r[0] for r in rows)
        dangling = [e for e in edge_list if e.src not in known or e.dst not in known]
        if dangling:
            raise DataIntegrityError(
                f"{len(dangling)} edge(s) reference unknown entities",
                {"edges": [f"{e.src} -{e.kind}-> {e.dst}" for e in dangling[:10]]},
            )
        self.conn.executemany(
            "INSERT OR REPLACE INTO edges (src, dst, kind, strength) VALUES (?, ?, ?, ?)",
            [(e.src, e.dst, e.kind, e.strength) for e in edge_list],
        )

    def _write_chunks(self, chunk_list: List[Chunk]) -> None:
        if not chunk_list:
            return
        row = self.conn.execute(
            "SELECT value FROM store_meta WHERE key = 'embedding_dim'"
        ).fetchone()
        dim = int(row["value"]) if row else None
        for chunk in chunk_list:
            if chunk.embedding is None:
                continue
            if dim is None:
                dim = len(chunk.embedding)
            problems = validate_embedding(chunk.embedding, dim)
            if problems:
                raise DataIntegrityError(
                    f"Chunk '{chunk.chunk_id}' has an invalid embedding: {', '.join(problems)}",
                    {"chunk_id": chunk.chunk_id},
                )
        if dim is not None and row is None:
            self.conn.execute(
                "INSERT INTO store_meta (key, value) VALUES ('embedding_dim', ?)", (str(dim),),
            )

        self.conn.executemany(
            """
            INSERT OR REPLACE INTO chunks (
                chunk_id, repo, entity_id, chunk_type, content, embedding, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    c.chunk_id, c.repo, c.entity_id, c.chunk_type, c.content,
                    json.dumps(c.embedding) if c.embedding is not None else None,
                    json.dumps(c.metadata) if c.metadata else None,
                )
                for c in chunk_list
            ],
        )
        if self.fts_enabled:
            self.conn.executemany(
                "DELETE FROM chunks_fts WHERE chunk_id = ?",
                [(c.chunk_id,) for c in chunk_list],
            )
            self.conn.executemany(
                "INSERT INTO chunks_fts (chunk_id, content) VALUES (?, ?)",
                [(c.chunk_id, c.content) for c in chunk_list],
            )

    def _sync_vectors(self, chunk_list: List[Chunk]) -> None:
        # The LanceDB index is derived data; SQLite has already committed.
        if self.vector_store is None or not chunk_list:
            return
        try:
            self.vector_store.add_chunks(chunk_list)
        except (OSError, RuntimeError, ValueError) as exc:
            logger.warning(
                "Vector index out of sync after batch insert (rebuild with "
                "rebuild_vector_index): %s", exc,
            )

    def rebuild_vector_index(self) -> int:
        """Re-create the LanceDB index from the embeddings stored in SQLite."""
        if self.vector_store is None:
            return 0
        self.vector_store.clear()
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT {_CHUNK_COLUMNS}, c.embedding FROM chunks c "
                "WHERE c.embedding IS NOT NULL ORDER BY c.chunk_id"
            ).fetchall()
        count = self.vector_store.add_chunks(_row_to_chunk(r, with_embedding=True) for r in rows)
        logger.info("Rebuilt vector index with %d chunks.", count)
        return count

    def clear(self) -> None:
        with self._lock, self.conn:
            cur = self.conn.cursor()
            cur.execute("DELETE FROM edges")
            cur.execute("DELETE FROM chunks")
            cur.execute("DELETE FROM entities")
            cur.execute("DELETE FROM repositories")
            cur.execute("DELETE FROM store_meta")
            if self.fts_enabled:
                cur.execute("DELETE FROM chunks_fts")
        if self.vector_store is not None:
            self.vector_store.clear()

    # ------------------------------------------------------------------
    # Reads: repositories, entities, edges, chunks
    # ------------------------------------------------------------------

    def list_repositories(self) -> List[Repository]:
        """Registered repositories plus any repository that only appears in data."""
        with self._reader() as conn:
            registered = {
                row["repo_id"]: row for row in conn.execute("SELECT * FROM repositories")
            }
            entity_counts = dict(
                conn.execute("SELECT repo, COUNT(*) FROM entities GROUP BY repo").fetchall()
            )
            chunk_counts = dict(
                conn.execute("SELECT repo, COUNT(*) FROM chunks GROUP BY repo").fetchall()
            )

        repos: List[Repository] = []
        for repo_id in sorted(set(registered) | set(entity_counts) | set(chunk_counts)):
            row = registered.get(repo_id)
            if row is not None:
                repo = Repository(
                    repo_id=repo_id,
                    name=row["name"],
                    version=row["version"],
                    branch=row["branch"],
                    commit_hash=row["commit_hash"],
                    indexed_at=row["indexed_at"],
                    embedding_model=row["embedding_model"],
                    metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                )
            else:
                repo = Repository(repo_id=repo_id, name=repo_id)
            repo.entity_count = entity_counts.get(repo_id, 0)
            repo.chunk_count = chunk_counts.get(repo_id, 0)
            repos.append(repo)
        return repos

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE entity_id = ?", (entity_id,),
            ).fetchone()
        return _row_to_entity(row) if row else None

    def find_entities(
        self,
        name: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 5,
        fuzzy: bool = False,
        exact: bool = False,
    ) -> List[Entity]:
        """Resolve *name* to entities: id/qualname/name equality, then qualified
        suffix, then (optionally) fuzzy name similarity.  With *exact* only the
        equality tier is consulted.

        Each tier is ordered by ``entity_id``; a later tier is consulted only
        when the earlier ones found nothing.
        """
        name = name.strip()
        if not name:
            return []
        repo_sql, repo_params = _repo_clause("repo", repositories)
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE (entity_id = ? OR qualname = ? OR name = ?)"
                f"{repo_sql} ORDER BY entity_id LIMIT ?",
                [name, name, name, *repo_params, limit],
            ).fetchall()
            if not rows and not exact:
                rows = conn.execute(
                    "SELECT * FROM entities WHERE (qualname = ? COLLATE NOCASE "
                    "OR name = ? COLLATE NOCASE OR qualname LIKE ? ESCAPE '\\')"
                    f"{repo_sql} ORDER BY entity_id LIMIT ?",
                    [name, name, "%." + escape_like(name), *repo_params, limit],
                ).fetchall()
            if not rows and fuzzy and not exact:
                scored = []
                for row in conn.execute(
                    f"SELECT * FROM entities WHERE 1 = 1{repo_sql}", repo_params,
                ):
                    sim = max(
                        trigram_similarity(name, row["name"]),
                        trigram_similarity(name, row["qualname"]),
                    )
                    if sim >= FUZZY_THRESHOLD:
                        scored.append((sim, row))
                scored.sort(key=lambda item: (-item[0], item[1]["entity_id"]))
                rows = [row for _, row in scored[:limit]]
        return [_row_to_entity(r) for r in rows]

    def get_outgoing_edges(self, entity_id: str, min_strength: float = 0.0) -> List[Relationship]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM edges WHERE src = ? AND strength >= ? ORDER BY dst, kind",
                (entity_id, min_strength),
            ).fetchall()
        return [Relationship(r["src"], r["dst"], r["kind"], r["strength"]) for r in rows]

    def get_incoming_edges(self, entity_id: str, min_strength: float = 0.0) -> List[Relationship]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM edges WHERE dst = ? AND strength >= ? ORDER BY src, kind",
                (entity_id, min_strength),
            ).fetchall()
        return [Relationship(r["src"], r["dst"], r["kind"], r["strength"]) for r in rows]

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._reader() as conn:
            row = conn.execute(
                f"SELECT {_CHUNK_COLUMNS}, c.embedding FROM chunks c WHERE c.chunk_id = ?",
                (chunk_id,),
            ).fetchone()
        return _row_to_chunk(row, with_embedding=True) if row else None

    def chunks_for_entities(
        self,
        entity_ids: Sequence[str],
        repositories: Optional[Iterable[str]] = None,
    ) -> List[Chunk]:
        if not entity_ids:
            return []
        repo_sql, repo_params = _repo_clause("c.repo", repositories)
        out: List[Chunk] = []
        ids = sorted(set(entity_ids))
        with self._reader() as conn:
            for i in range(0, len(ids), 500):
                batch = ids[i:i + 500]
                rows = conn.execute(
                    f"SELECT {_CHUNK_COLUMNS} FROM chunks c "
                    f"WHERE c.entity_id IN ({','.join('?' * len(batch))}){repo_sql}",
                    [*batch, *repo_params],
                ).fetchall()
                out.extend(_row_to_chunk(r) for r in rows)
        out.sort(key=lambda c: c.chunk_id)
        return out

    # ------------------------------------------------------------------
    # Search: lexical / pattern / vector
    # ------------------------------------------------------------------

    def lexical_search(
        self,
        term: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[Tuple[Chunk, float]]:
        """Term-overlap search over chunk content.

        Returns ``(chunk, score)`` pairs, best first, with positive scores
        (negated FTS5 BM25, or a term-frequency sum without FTS5).
        """
        terms = content_terms(term) or list(dict.fromkeys(tokenize(term)))
        if not terms:
            return []
        repo_sql, repo_params = _repo_clause("c.repo", repositories)

        if self.fts_enabled:
            match = " OR ".join('"' + t.replace('"', '""') + '"' for t in terms)
            with self._reader() as conn:
                rows = conn.execute(
                    f"SELECT {_CHUNK_COLUMNS}, -bm25(chunks_fts) AS score "
                    "FROM chunks_fts JOIN chunks c ON c.chunk_id = chunks_fts.chunk_id "
                    f"WHERE chunks_fts MATCH ?{repo_sql} "
                    "ORDER BY score DESC, c.chunk_id ASC LIMIT ?",
                    [match, *repo_params, limit],
                ).fetchall()
            return [(_row_to_chunk(r), float(r["score"])) for r in rows]

        like_sql = " OR ".join("c.content LIKE ? ESCAPE '\\'" for _ in terms)
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE ({like_sql}){repo_sql}",
                [*("%" + escape_like(t) + "%" for t in terms), *repo_params],
            ).fetchall()
        scored: List[Tuple[Chunk, float]] = []
        for row in rows:
            tokens = tokenize(row["content"])
            score = float(sum(tokens.count(t) for t in terms))
            if score > 0:
                scored.append((_row_to_chunk(row), score))
        scored.sort(key=lambda item: (-item[1], item[0].chunk_id))
        return scored[:limit]

    def pattern_search(
        self,
        pattern: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[Tuple[Chunk, str, float]]:
        """Structural match of *pattern* against entity names and chunk content.

        Returns ``(chunk, match_kind, similarity)`` triples ordered by match
        specificity (see :data:`MATCH_KINDS`) then ``chunk_id``.  Patterns
        containing ``*`` or ``?`` are treated as globs.  ``similarity`` is
        1.0 except for fuzzy matches.
        """
        pattern = pattern.strip()
        if not pattern:
            return []
        repo_sql, repo_params = _repo_clause("c.repo", repositories)
        select = (
            f"SELECT {_CHUNK_COLUMNS}, e.name AS e_name, e.qualname AS e_qualname "
            "FROM chunks c LEFT JOIN entities e ON e.entity_id = c.entity_id "
        )

        hits: Dict[str, Tuple[Chunk, str, float]] = {}
        if "*" in pattern or "?" in pattern:
            like = glob_to_like(pattern)
            regex = glob_to_regex(pattern)
            with self._reader() as conn:
                rows = conn.execute(
                    select + "WHERE (e.name LIKE ? ESCAPE '\\' OR e.qualname LIKE ? ESCAPE '\\' "
                    f"OR c.content LIKE ? ESCAPE '\\'){repo_sql}",
                    [like, like, like, *repo_params],
                ).fetchall()
            for row in rows:
                fields = (row["e_name"] or "", row["e_qualname"] or "", row["content"])
                if any(regex.search(f) for f in fields):
                    hits[row["chunk_id"]] = (_row_to_chunk(row), "wildcard", 1.0)
        else:
            needle = pattern.lower()
            sub = "%" + escape_like(pattern) + "%"
            with self._reader() as conn:
                rows = conn.execute(
                    select + "WHERE (e.entity_id = ? OR e.name LIKE ? ESCAPE '\\' "
                    "OR e.qualname LIKE ? ESCAPE '\\' "
                    f"OR c.content LIKE ? ESCAPE '\\'){repo_sql}",
                    [pattern, sub, sub, sub, *repo_params],
                ).fetchall()
            for row in rows:
                name = (row["e_name"] or "").lower()
                qualname = (row["e_qualname"] or "").lower()
                entity_id = (row["entity_id"] or "").lower()
                if needle in (name, qualname, entity_id):
                    kind = "exact"
                elif qualname.endswith("." + needle):
                    kind = "qualified"
                elif name.startswith(needle):
                    kind = "prefix"
                elif needle in name or needle in qualname or needle in row["content"].lower():
                    kind = "substring"
                else:
                    continue
                hits[row["chunk_id"]] = (_row_to_chunk(row), kind, 1.0)

            if len(hits) < limit and len(pattern) >= 4:
                for entity in self.find_entities(pattern, repositories, limit=limit, fuzzy=True):
                    sim = max(
                        trigram_similarity(pattern, entity.name),
                        trigram_similarity(pattern, entity.qualname),
                    )
                    for chunk in self.chunks_for_entities([entity.entity_id], repositories):
                        hits.setdefault(chunk.chunk_id, (chunk, "fuzzy", sim))

        ordered = sorted(
            hits.values(),
            key=lambda h: (MATCH_KINDS.index(h[1]), -h[2], h[0].chunk_id),
        )
        return ordered[:limit]

    def vector_search(
        self,
        embedding: Sequence[float],
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> List[Tuple[Chunk, float]]:
        """Nearest chunks to *embedding* as ``(chunk, cosine_distance)`` pairs.

        Raises:
            CapabilityUnavailable: the store has no vector backend.
            ValueError: the query embedding has the wrong dimensionality.
        """
        if not self.has_vector_capability():
            raise CapabilityUnavailable("vector_search")
        dim = self.embedding_dim()
        if dim is None:
            return []
        if len(embedding) != dim:
            raise ValueError(f"Query embedding has dimension {len(embedding)}, store uses {dim}")

        if self.vector_store is not None:
            pairs = self.vector_store.search(embedding, repositories, limit)
            if not pairs:
                return []
            distances = dict(pairs)
            with self._reader() as conn:
                ids = list(distances)
                rows = conn.execute(
                    f"SELECT {_CHUNK_COLUMNS} FROM chunks c "
                    f"WHERE c.chunk_id IN ({','.join('?' * len(ids))})",
                    ids,
                ).fetchall()
            results = [(_row_to_chunk(r), distances[r["chunk_id"]]) for r in rows]
        else:
            repo_sql, repo_params = _repo_clause("c.repo", repositories)
            with self._reader() as conn:
                rows = conn.execute(
                    f"SELECT {_CHUNK_COLUMNS}, c.embedding FROM chunks c "
                    f"WHERE c.embedding IS NOT NULL{repo_sql}",
                    repo_params,
                ).fetchall()
            results = [
                (_row_to_chunk(r), cosine_distance(embedding, json.loads(r["embedding"])))
                for r in rows
            ]

        results.sort(key=lambda item: (item[1], item[0].chunk_id))
        return results[:limit]
