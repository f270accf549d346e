"""Weighted score fusion across retrieval sources.

Normalisation policy, applied per source before weighting:

========  =========  ===================================================
Source    Policy     Normalised score
========  =========  ===================================================
dense     fixed      similarity, already in ``[0, 1]`` (clamped)
sparse    max        ``raw / max(raw)``; 1.0 when all raw scores are equal
pattern   fixed      match-specificity score in ``[0, 1]`` (clamped)
graph     fixed      ``path_strength / hops`` in ``[0, 1]`` (clamped)
========  =========  ===================================================

Fixed-scale sources keep their absolute meaning across queries; BM25 has no
natural upper bound, so sparse is scaled by the best hit of the request.
Both maps are monotone, so a higher raw score never normalises lower.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import StrategyFailure, StrategyTimeout
from .models import SOURCES, CoverageReport, FusedResult, ScoredCandidate, SourceCoverage, StrategyResult

logger = logging.getLogger(__name__)

NORMALIZATION: Dict[str, str] = {
    "dense": "fixed",
    "sparse": "max",
    "pattern": "fixed",
    "graph": "fixed",
}

# Each strategy fetches ``limit * CANDIDATE_MULTIPLIER`` candidates, so the
# per-source top-K always exceeds the final limit.
CANDIDATE_MULTIPLIER = 3


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalize_scores(source: str, candidates: Sequence[ScoredCandidate]) -> Dict[str, float]:
    """Map each chunk id in *candidates* to a score in ``[0, 1]``.

    A chunk listed twice by the same source keeps its best score.
    """
    raw: Dict[str, float] = {}
    for cand in candidates:
        if cand.chunk_id not in raw or cand.raw_score > raw[cand.chunk_id]:
            raw[cand.chunk_id] = cand.raw_score
    if not raw:
        return {}

    if NORMALIZATION.get(source, "fixed") == "fixed":
        return {cid: _clamp(score) for cid, score in raw.items()}

    hi = max(raw.values())
    lo = min(raw.values())
    if hi == lo:
        return {cid: 1.0 for cid in raw}
    if hi <= 0:
        return {cid: 0.0 for cid in raw}
    return {cid: _clamp(score / hi) for cid, score in raw.items()}


class FusionEngine:
    """Combines per-source candidate lists into one deterministic ranking."""

    def fuse(
        self,
        candidate_lists: Mapping[str, Sequence[ScoredCandidate]],
        weights: Mapping[str, float],
        limit: Optional[int] = None,
        min_sources: int = 1,
    ) -> List[FusedResult]:
        """Fuse *candidate_lists* (source -> candidates) with *weights*.

        ``fused_score = sum(weights[s] * normalised[s])`` over contributing
        sources, summed in :data:`SOURCES` order.  Output is sorted by
        ``(-fused_score, chunk_id)`` and truncated to *limit* afterwards.
        Results backed by fewer than *min_sources* sources are dropped.
        """
        grouped: "OrderedDict[str, FusedResult]" = OrderedDict()
        for source in SOURCES:
            candidates = candidate_lists.get(source) or []
            normalised = normalize_scores(source, candidates)
            for cand in candidates:
                result = grouped.get(cand.chunk_id)
                if result is None:
                    result = FusedResult(
                        chunk_id=cand.chunk_id,
                        repo=cand.repo,
                        content=cand.content,
                        fused_score=0.0,
                        per_source_scores={},
                        metadata=dict(cand.metadata),
                        entity_id=cand.entity_id,
                    )
                    grouped[cand.chunk_id] = result
                else:
                    for key, value in cand.metadata.items():
                        result.metadata.setdefault(key, value)
                result.per_source_scores[source] = normalised[cand.chunk_id]

        fused: List[FusedResult] = []
        for result in grouped.values():
            if len(result.per_source_scores) < min_sources:
                continue
            score = 0.0
            for source in SOURCES:
                if source in result.per_source_scores:
                    score += weights.get(source, 0.0) * result.per_source_scores[source]
            result.fused_score = score
            fused.append(result)

        fused.sort(key=lambda r: (-r.fused_score, r.chunk_id))
        if limit is not None:
            fused = fused[:limit]
        logger.debug("Fused %d unique chunks into %d results", len(grouped), len(fused))
        return fused

    def coverage(
        self,
        results: Sequence[FusedResult],
        strategy_results: Mapping[str, StrategyResult],
        failures: Optional[Mapping[str, StrategyFailure]] = None,
    ) -> CoverageReport:
        """Per-source contribution to *results*, plus why a source is absent."""
        failures = failures or {}
        report = CoverageReport()
        for source in SOURCES:
            cov = SourceCoverage()
            if source in failures:
                failure = failures[source]
                cov.status = "timeout" if isinstance(failure, StrategyTimeout) else "failed"
                cov.error = failure.reason
            elif source in strategy_results:
                outcome = strategy_results[source]
                cov.candidates = len(outcome.candidates)
                if outcome.candidates:
                    cov.status = "ok"
                elif outcome.status == "degraded":
                    cov.status = "degraded"
                else:
                    cov.status = "empty"
            cov.contributed = sum(1 for r in results if source in r.per_source_scores)
            cov.fraction = cov.contributed / len(results) if results else 0.0
            report.sources[source] = cov
        return report

    def explain(self, result: FusedResult, weights: Mapping[str, float]) -> str:
        """One-line breakdown of how *result* got its fused score."""
        parts = [
            f"{source} {weights.get(source, 0.0):.2f}x{result.per_source_scores[source]:.3f}"
            f"={weights.get(source, 0.0) * result.per_source_scores[source]:.3f}"
            for source in SOURCES
            if source in result.per_source_scores
        ]
        return f"{result.chunk_id}: {result.fused_score:.4f} = " + " + ".join(parts)

    @staticmethod
    def group_by_repository(results: Sequence[FusedResult]) -> Dict[str, List[FusedResult]]:
        """Results bucketed by repository, keeping rank order within each bucket."""
        groups: Dict[str, List[FusedResult]] = {}
        for result in results:
            groups.setdefault(result.repo, []).append(result)
        return dict(sorted(groups.items()))
