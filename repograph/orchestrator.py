"""Query orchestrator coordinating the analyzer, retrieval strategies and fusion."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Dict, Iterable, List, Mapping, Optional

from .config import DEFAULT_LIMIT, DEFAULT_MAX_WORKERS, DEFAULT_STRATEGY_TIMEOUT
from .config_manager import RetrievalSettings
from .embeddings import EmbeddingProvider, get_embedder
from .errors import (
    AllStrategiesFailed,
    DataIntegrityError,
    InvalidQuery,
    StrategyFailure,
    StrategyTimeout,
)
from .fusion import CANDIDATE_MULTIPLIER, FusionEngine
from .graph import GraphExpander
from .models import FusedResult, QueryMetrics, ResultEnvelope, StrategyResult
from .query_analyzer import QueryAnalyzer
from .storage import GraphStore
from .strategies import (
    DenseStrategy,
    GraphStrategy,
    PatternStrategy,
    RetrievalStrategy,
    SparseStrategy,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
# Serialised size of a result's fields other than ``content``.
RESULT_OVERHEAD_CHARS = 120
# Content the top result keeps even when the budget is smaller.
MIN_TOP_RESULT_CHARS = 80


def _trim(result: FusedResult, keep: int) -> None:
    if keep >= len(result.content):
        return
    result.content = result.content[:keep].rstrip()
    result.truncated = True


def apply_token_budget(results: List[FusedResult], max_tokens: Optional[int]) -> List[FusedResult]:
    """Fit the serialised results in *max_tokens*.

    The lowest-ranked results are trimmed first.  A result whose content would
    be cut away entirely is dropped instead, except the top result, which is
    always kept with at least ``MIN_TOP_RESULT_CHARS`` of content.  Scores and
    order of the kept results are never touched.  Cuts fall on code-point
    boundaries and trailing whitespace is dropped.  Trimmed results get
    ``truncated = True``.
    """
    if max_tokens is None:
        return results
    budget = max_tokens * CHARS_PER_TOKEN
    excess = sum(len(r.content) + RESULT_OVERHEAD_CHARS for r in results) - budget
    kept = list(results)
    while excess > 0 and len(kept) > 1:
        last = kept[-1]
        if len(last.content) > excess:
            _trim(last, len(last.content) - excess)
            excess = 0
            continue
        kept.pop()
        excess -= len(last.content) + RESULT_OVERHEAD_CHARS
    if excess > 0 and kept:
        top = kept[0]
        _trim(top, max(len(top.content) - excess, MIN_TOP_RESULT_CHARS))
    if len(kept) < len(results):
        logger.debug("Token budget dropped %d of %d results", len(results) - len(kept), len(results))
    return kept


class QueryOrchestrator:
    """Runs one query through analysis, concurrent retrieval and fusion.

    The store handle is passed in and owned by the caller; the orchestrator
    owns only its thread pool (see :meth:`close`).
    """

    def __init__(
        self,
        store: GraphStore,
        embedder: Optional[EmbeddingProvider] = None,
        analyzer: Optional[QueryAnalyzer] = None,
        expander: Optional[GraphExpander] = None,
        strategies: Optional[Mapping[str, RetrievalStrategy]] = None,
        fusion: Optional[FusionEngine] = None,
        strategy_timeout: float = DEFAULT_STRATEGY_TIMEOUT,
        max_workers: int = DEFAULT_MAX_WORKERS,
        default_limit: int = DEFAULT_LIMIT,
    ) -> None:
        self.store = store
        self.embedder = embedder or get_embedder(store.embedding_dim())
        self.analyzer = analyzer or QueryAnalyzer(
            entity_lookup=lambda name: bool(store.find_entities(name, limit=1, exact=True))
        )
        self.expander = expander or GraphExpander(store)
        if strategies is None:
            strategies = {
                "dense": DenseStrategy(store, self.embedder),
                "sparse": SparseStrategy(store),
                "pattern": PatternStrategy(store),
                "graph": GraphStrategy(store, self.expander),
            }
        self.strategies: Dict[str, RetrievalStrategy] = dict(strategies)
        self.fusion = fusion or FusionEngine()
        self.strategy_timeout = strategy_timeout
        self.default_limit = default_limit
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="repograph")

    @classmethod
    def from_settings(
        cls,
        store: GraphStore,
        settings: RetrievalSettings,
        embedder: Optional[EmbeddingProvider] = None,
    ) -> "QueryOrchestrator":
        expander = GraphExpander(
            store,
            depth=settings.graph_depth,
            min_strength=settings.graph_min_strength,
            xref_min_strength=settings.xref_min_strength,
        )
        return cls(
            store,
            embedder=embedder or get_embedder(store.embedding_dim() or settings.embedding_dim),
            expander=expander,
            strategy_timeout=settings.strategy_timeout,
            max_workers=settings.max_workers,
            default_limit=settings.default_limit,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "QueryOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------

    def query(
        self,
        query: str,
        repositories: Optional[Iterable[str]] = None,
        max_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        force_type: Optional[str] = None,
        force_weights: Optional[Mapping[str, float]] = None,
        explain: bool = False,
        min_sources: int = 1,
    ) -> ResultEnvelope:
        """Answer *query* with a fused, ranked result envelope.

        Raises:
            InvalidQuery: the query (or a numeric option) is malformed.
            AllStrategiesFailed: no strategy produced a result.
            DataIntegrityError: stored data is corrupt.
        """
        started = time.perf_counter()
        limit = self.default_limit if limit is None else limit
        if limit < 1:
            raise InvalidQuery("limit must be at least 1", {"limit": limit})
        if max_tokens is not None and max_tokens < 1:
            raise InvalidQuery("max_tokens must be at least 1", {"max_tokens": max_tokens})

        analysis = self.analyzer.analyze(query, force_type=force_type, force_weights=force_weights)
        text = query.strip()
        repos = sorted(set(repositories)) if repositories else None
        fetch = limit * CANDIDATE_MULTIPLIER

        futures: Dict[str, Future] = {
            source: self._executor.submit(strategy.retrieve, text, repos, fetch)
            for source, strategy in self.strategies.items()
        }

        outcomes: Dict[str, StrategyResult] = {}
        failures: Dict[str, StrategyFailure] = {}
        metrics = QueryMetrics()
        for source, future in futures.items():
            remaining = max(0.0, started + self.strategy_timeout - time.perf_counter())
            try:
                outcomes[source] = future.result(timeout=remaining)
            except FuturesTimeout:
                future.cancel()
                failures[source] = StrategyTimeout(source, self.strategy_timeout)
                logger.warning("%s retrieval timed out after %.2fs", source, self.strategy_timeout)
            except DataIntegrityError:
                raise
            except Exception as exc:
                failures[source] = StrategyFailure(source, f"{type(exc).__name__}: {exc}")
                logger.warning("%s retrieval failed: %s", source, exc)
            if source in outcomes:
                setattr(metrics, source, outcomes[source].elapsed)
            else:
                setattr(metrics, source, time.perf_counter() - started)

        # A degraded source ran nothing, so it does not count as a success.
        if failures and all(o.status == "degraded" for o in outcomes.values()):
            for source in outcomes:
                failures[source] = StrategyFailure(source, "backing capability unavailable")
            raise AllStrategiesFailed(list(failures.values()))

        fusion_start = time.perf_counter()
        results = self.fusion.fuse(
            {source: outcome.candidates for source, outcome in outcomes.items()},
            analysis.weights,
            limit=limit,
            min_sources=min_sources,
        )
        results = apply_token_budget(results, max_tokens)
        coverage = self.fusion.coverage(results, outcomes, failures)
        explanations = None
        if explain:
            explanations = [self.fusion.explain(r, analysis.weights) for r in results]
        metrics.fusion = time.perf_counter() - fusion_start
        metrics.total = time.perf_counter() - started

        degraded = coverage.degraded_sources()
        logger.info(
            "Query %r classified %s: %d results in %.3fs%s",
            text, analysis.query_type, len(results), metrics.total,
            f" (degraded: {', '.join(degraded)})" if degraded else "",
        )
        return ResultEnvelope(
            results=results,
            analysis=analysis,
            metrics=metrics,
            coverage=coverage,
            explanations=explanations,
        )
