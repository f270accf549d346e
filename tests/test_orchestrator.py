"""Tests for query orchestration, degradation and the token budget."""

import time
from pathlib import Path

import pytest

from repograph.config_manager import RetrievalSettings
from repograph.errors import AllStrategiesFailed, DataIntegrityError, InvalidQuery
from repograph.loader import KnowledgeBaseLoader
from repograph.models import FusedResult, StrategyResult
from repograph.orchestrator import (
    CHARS_PER_TOKEN,
    MIN_TOP_RESULT_CHARS,
    RESULT_OVERHEAD_CHARS,
    QueryOrchestrator,
    apply_token_budget,
)
from repograph.storage import GraphStore
from repograph.strategies import DenseStrategy, SparseStrategy


class FailingStrategy:
    def __init__(self, source: str, exc: Exception) -> None:
        self.source = source
        self.exc = exc

    def retrieve(self, query, repositories=None, limit=20):
        raise self.exc


class SlowStrategy:
    def __init__(self, source: str, delay: float) -> None:
        self.source = source
        self.delay = delay

    def retrieve(self, query, repositories=None, limit=20):
        time.sleep(self.delay)
        return StrategyResult(self.source, [])


def _result(chunk_id: str, content: str) -> FusedResult:
    return FusedResult(
        chunk_id=chunk_id, repo="r", content=content, fused_score=0.5, per_source_scores={"dense": 0.5},
    )


class TestTokenBudget:
    """Tests for apply_token_budget."""

    def test_no_budget(self):
        results = [_result("a", "x" * 100)]
        assert apply_token_budget(results, None)[0].content == "x" * 100
        assert not results[0].truncated

    def test_lowest_ranked_trimmed_first(self):
        results = [_result(c, "x" * 100) for c in "abc"]
        total = 3 * (100 + RESULT_OVERHEAD_CHARS)
        max_tokens = (total - 60) // CHARS_PER_TOKEN
        apply_token_budget(results, max_tokens)
        assert [len(r.content) for r in results] == [100, 100, 40]
        assert [r.truncated for r in results] == [False, False, True]

    def test_trailing_whitespace_dropped(self):
        results = [_result("a", "word " * 40)]
        apply_token_budget(results, (200 + RESULT_OVERHEAD_CHARS - 20) // CHARS_PER_TOKEN)
        assert results[0].content == ("word " * 36).rstrip()
        assert results[0].truncated

    def test_tail_dropped_when_trimming_cannot_fit(self):
        results = [_result(c, "x" * 100) for c in "abcde"]
        max_tokens = 2 * (100 + RESULT_OVERHEAD_CHARS) // CHARS_PER_TOKEN
        kept = apply_token_budget(results, max_tokens)
        assert [r.chunk_id for r in kept] == ["a", "b"]
        assert [len(r.content) for r in kept] == [100, 100]
        assert not any(r.truncated for r in kept)

    def test_top_result_never_blank(self):
        """A budget smaller than one result keeps a non-empty top result."""
        results = [_result(c, "x" * 100) for c in "abc"]
        kept = apply_token_budget(results, 10)
        assert [r.chunk_id for r in kept] == ["a"]
        assert kept[0].content == "x" * MIN_TOP_RESULT_CHARS
        assert kept[0].truncated

    def test_within_budget_untouched(self):
        results = [_result("a", "short")]
        apply_token_budget(results, 1000)
        assert results[0].content == "short"
        assert not results[0].truncated


class TestQuery:
    """Tests for QueryOrchestrator.query against the sample knowledge base."""

    def test_envelope(self, orchestrator: QueryOrchestrator):
        envelope = orchestrator.query("UserService.validateCredentials")
        assert envelope.analysis.query_type == "identifier"
        assert {r.chunk_id for r in envelope.results[:2]} == {
            "auth:UserService:code",
            "auth:UserService.validateCredentials:code",
        }
        scores = [r.fused_score for r in envelope.results]
        assert scores == sorted(scores, reverse=True)
        assert envelope.explanations is None

        metrics = envelope.metrics
        assert metrics.total >= max(metrics.dense, metrics.sparse, metrics.pattern, metrics.graph)
        assert metrics.total >= metrics.fusion
        assert set(envelope.to_dict()) == {"results", "analysis", "metrics", "coverage"}

    def test_repeated_queries_identical(self, orchestrator: QueryOrchestrator):
        first = orchestrator.query("how does streaming response work")
        second = orchestrator.query("how does streaming response work")
        assert [(r.chunk_id, r.fused_score) for r in first.results] == [
            (r.chunk_id, r.fused_score) for r in second.results
        ]

    def test_limit(self, orchestrator: QueryOrchestrator):
        assert len(orchestrator.query("streaming", limit=2).results) <= 2

    def test_repository_filter(self, orchestrator: QueryOrchestrator):
        envelope = orchestrator.query("password session", repositories=["auth"])
        assert envelope.results
        assert {r.repo for r in envelope.results} == {"auth"}

    def test_explain(self, orchestrator: QueryOrchestrator):
        envelope = orchestrator.query("streaming response", explain=True)
        assert len(envelope.explanations) == len(envelope.results)
        assert envelope.explanations[0].startswith(envelope.results[0].chunk_id)

    def test_token_budget_keeps_order(self, orchestrator: QueryOrchestrator):
        full = orchestrator.query("streaming response")
        trimmed = orchestrator.query("streaming response", max_tokens=60)
        kept = len(trimmed.results)
        assert 1 <= kept < len(full.results)
        assert [r.chunk_id for r in trimmed.results] == [r.chunk_id for r in full.results[:kept]]
        assert [r.fused_score for r in trimmed.results] == [r.fused_score for r in full.results[:kept]]
        assert trimmed.results[0].content
        total = sum(len(r.content) + RESULT_OVERHEAD_CHARS for r in trimmed.results)
        assert total <= 60 * CHARS_PER_TOKEN

    def test_forced_weights(self, orchestrator: QueryOrchestrator):
        envelope = orchestrator.query("streaming", force_weights={"sparse": 1.0})
        assert envelope.analysis.weights["sparse"] == 1.0
        assert all(r.fused_score == r.per_source_scores.get("sparse", 0.0) for r in envelope.results)

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"max_tokens": 0}])
    def test_invalid_options(self, orchestrator: QueryOrchestrator, kwargs):
        with pytest.raises(InvalidQuery):
            orchestrator.query("streaming", **kwargs)

    def test_invalid_query(self, orchestrator: QueryOrchestrator):
        with pytest.raises(InvalidQuery):
            orchestrator.query("  ")

    def test_full_confidence_needs_exact_entity(self, orchestrator: QueryOrchestrator):
        assert orchestrator.analyzer.analyze("UserService").confidence == 1.0
        variant = orchestrator.analyzer.analyze("userservice")
        assert variant.confidence < 1.0
        assert "exactly" not in variant.reasoning

    def test_from_settings(self, seeded_store: GraphStore, embedder):
        settings = RetrievalSettings(graph_depth=1, default_limit=3)
        with QueryOrchestrator.from_settings(seeded_store, settings, embedder) as orch:
            assert orch.expander.depth == 1
            assert len(orch.query("password").results) <= 3


class TestDegradation:
    """Tests for partial failure, timeouts and missing capabilities."""

    def test_dense_degraded_without_vectors(self, temp_dir: Path, payload, embedder):
        store = GraphStore(temp_dir / "novec", vector_backend="none")
        KnowledgeBaseLoader(store, embedder).load(payload)
        with QueryOrchestrator(store, embedder=embedder) as orch:
            envelope = orch.query("how does streaming response work")
        assert envelope.results
        assert envelope.coverage.sources["dense"].status == "degraded"
        assert envelope.coverage.dense == 0.0
        assert envelope.coverage.sources["dense"].error is None
        store.close()

    def test_partial_failure_recorded(self, seeded_store: GraphStore, caplog):
        strategies = {
            "sparse": SparseStrategy(seeded_store),
            "graph": FailingStrategy("graph", RuntimeError("boom")),
        }
        with QueryOrchestrator(seeded_store, strategies=strategies) as orch:
            envelope = orch.query("streaming")
        assert envelope.results
        graph = envelope.coverage.sources["graph"]
        assert graph.status == "failed"
        assert "RuntimeError" in graph.error
        assert "graph retrieval failed" in caplog.text

    def test_timeout_recorded(self, seeded_store: GraphStore):
        strategies = {
            "sparse": SparseStrategy(seeded_store),
            "graph": SlowStrategy("graph", 1.0),
        }
        with QueryOrchestrator(seeded_store, strategies=strategies, strategy_timeout=0.2) as orch:
            started = time.perf_counter()
            envelope = orch.query("streaming")
            elapsed = time.perf_counter() - started
        assert envelope.coverage.sources["graph"].status == "timeout"
        assert envelope.results
        assert elapsed < 1.0

    def test_all_strategies_failed(self, seeded_store: GraphStore):
        strategies = {
            source: FailingStrategy(source, RuntimeError(f"{source} down"))
            for source in ("dense", "sparse", "pattern", "graph")
        }
        with QueryOrchestrator(seeded_store, strategies=strategies) as orch:
            with pytest.raises(AllStrategiesFailed) as exc_info:
                orch.query("streaming")
        assert len(exc_info.value.failures) == 4
        assert exc_info.value.to_dict()["code"] == "ALL_STRATEGIES_FAILED"

    def test_degraded_dense_alone_is_not_success(self, temp_dir: Path, payload, embedder):
        """Only a degraded source left means the system, not the query, failed."""
        store = GraphStore(temp_dir / "novec", vector_backend="none")
        KnowledgeBaseLoader(store, embedder).load(payload)
        strategies = {
            "dense": DenseStrategy(store, embedder),
            "sparse": FailingStrategy("sparse", RuntimeError("index locked")),
            "pattern": FailingStrategy("pattern", RuntimeError("bad regex")),
            "graph": FailingStrategy("graph", RuntimeError("boom")),
        }
        with QueryOrchestrator(store, embedder=embedder, strategies=strategies) as orch:
            with pytest.raises(AllStrategiesFailed) as exc_info:
                orch.query("how does streaming response work")
        store.close()
        assert set(exc_info.value.to_dict()["context"]["failures"]) == {
            "dense", "sparse", "pattern", "graph",
        }

    def test_all_timed_out(self, seeded_store: GraphStore):
        strategies = {"sparse": SlowStrategy("sparse", 1.0)}
        with QueryOrchestrator(seeded_store, strategies=strategies, strategy_timeout=0.1) as orch:
            with pytest.raises(AllStrategiesFailed):
                orch.query("streaming")

    def test_integrity_error_propagates(self, seeded_store: GraphStore):
        strategies = {
            "sparse": SparseStrategy(seeded_store),
            "graph": FailingStrategy("graph", DataIntegrityError("dangling edge")),
        }
        with QueryOrchestrator(seeded_store, strategies=strategies) as orch:
            with pytest.raises(DataIntegrityError):
                orch.query("streaming")
