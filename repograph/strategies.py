"""The four retrieval strategies behind one ``retrieve`` capability.

Each strategy is read-only against the shared :class:`GraphStore` and may run
concurrently with the others.  Candidates come back sorted by
``(-raw_score, chunk_id)``.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Protocol

from .embeddings import EmbeddingProvider, distance_to_similarity
from .errors import CapabilityUnavailable
from .graph import GraphExpander
from .lexical import content_terms, extract_identifiers, looks_like_identifier
from .models import Chunk, Entity, ScoredCandidate, StrategyResult
from .storage import GraphStore

logger = logging.getLogger(__name__)

# Pattern scores by match specificity.
MATCH_SCORES: Dict[str, float] = {
    "exact": 1.0,
    "qualified": 0.9,
    "prefix": 0.75,
    "substring": 0.6,
    "wildcard": 0.45,
    "fuzzy": 0.3,
}

MAX_PATTERNS = 3
MAX_SEEDS = 5


class RetrievalStrategy(Protocol):
    source: str

    def retrieve(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> StrategyResult:
        ...


def _candidate(chunk: Chunk, score: float, source: str) -> ScoredCandidate:
    return ScoredCandidate(
        chunk_id=chunk.chunk_id,
        repo=chunk.repo,
        content=chunk.content,
        raw_score=score,
        source=source,
        entity_id=chunk.entity_id,
        metadata=dict(chunk.metadata),
    )


def _finish(source: str, candidates: List[ScoredCandidate], start: float, limit: int) -> StrategyResult:
    candidates.sort(key=lambda c: (-c.raw_score, c.chunk_id))
    candidates = candidates[:limit]
    elapsed = time.perf_counter() - start
    logger.debug("%s retrieval: %d candidates in %.3fs", source, len(candidates), elapsed)
    return StrategyResult(
        source=source,
        candidates=candidates,
        elapsed=elapsed,
        status="ok" if candidates else "empty",
    )


def query_patterns(query: str) -> List[str]:
    """Patterns worth matching structurally for *query*."""
    text = query.strip()
    if "*" in text or "?" in text.rstrip("?"):
        return [text]
    identifiers = extract_identifiers(text)
    if identifiers:
        return identifiers[:MAX_PATTERNS]
    if looks_like_identifier(text):
        return [text]
    return [t for t in content_terms(text) if len(t) >= 4][:MAX_PATTERNS]


# ---------------------------------------------------------------------------
# Dense
# ---------------------------------------------------------------------------

class DenseStrategy:
    """Cosine similarity between the query embedding and chunk embeddings.

    Degrades to an empty result when the store has no vector capability.
    """

    source = "dense"

    def __init__(self, store: GraphStore, embedder: EmbeddingProvider) -> None:
        self.store = store
        self.embedder = embedder

    def retrieve(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> StrategyResult:
        if not self.store.has_vector_capability():
            return StrategyResult(source=self.source, candidates=[], elapsed=0.0, status="degraded")

        start = time.perf_counter()
        embedding = self.embedder.embed_text(query)
        try:
            hits = self.store.vector_search(embedding, repositories, limit)
        except CapabilityUnavailable:
            return StrategyResult(source=self.source, candidates=[], elapsed=0.0, status="degraded")

        candidates = [
            _candidate(chunk, distance_to_similarity(distance), self.source)
            for chunk, distance in hits
        ]
        return _finish(self.source, candidates, start, limit)


# ---------------------------------------------------------------------------
# Sparse
# ---------------------------------------------------------------------------

class SparseStrategy:
    """Lexical term matching (BM25 via FTS5 where available)."""

    source = "sparse"

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def retrieve(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> StrategyResult:
        start = time.perf_counter()
        candidates = [
            _candidate(chunk, score, self.source)
            for chunk, score in self.store.lexical_search(query, repositories, limit)
        ]
        return _finish(self.source, candidates, start, limit)


# ---------------------------------------------------------------------------
# Pattern
# ---------------------------------------------------------------------------

class PatternStrategy:
    """Identifier and glob matching, scored by how specific the match is."""

    source = "pattern"

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def retrieve(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> StrategyResult:
        start = time.perf_counter()
        best: Dict[str, ScoredCandidate] = {}
        for pattern in query_patterns(query):
            for chunk, kind, similarity in self.store.pattern_search(pattern, repositories, limit):
                score = MATCH_SCORES[kind] * (similarity if kind == "fuzzy" else 1.0)
                current = best.get(chunk.chunk_id)
                if current is None or score > current.raw_score:
                    candidate = _candidate(chunk, score, self.source)
                    candidate.metadata["match"] = kind
                    best[chunk.chunk_id] = candidate
        return _finish(self.source, list(best.values()), start, limit)


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class GraphStrategy:
    """Chunks of entities reachable from the entities the query names."""

    source = "graph"

    def __init__(self, store: GraphStore, expander: GraphExpander) -> None:
        self.store = store
        self.expander = expander

    def resolve_seeds(
        self, query: str, repositories: Optional[Iterable[str]] = None,
    ) -> List[Entity]:
        text = query.strip()
        names = extract_identifiers(text)
        fuzzy = True
        if not names and looks_like_identifier(text):
            names = [text]
        if not names:
            names = [t for t in content_terms(text) if len(t) >= 4]
            fuzzy = False

        seeds: Dict[str, Entity] = {}
        for name in names:
            for entity in self.store.find_entities(name, repositories, limit=MAX_SEEDS, fuzzy=fuzzy):
                seeds.setdefault(entity.entity_id, entity)
            if len(seeds) >= MAX_SEEDS:
                break
        return [seeds[k] for k in sorted(seeds)][:MAX_SEEDS]

    def retrieve(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        limit: int = 20,
    ) -> StrategyResult:
        start = time.perf_counter()
        seeds = self.resolve_seeds(query, repositories)
        if not seeds:
            return _finish(self.source, [], start, limit)
        candidates = self.expander.expand_query(seeds, repositories, limit)
        return _finish(self.source, candidates, start, limit)
