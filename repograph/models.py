"""Core data models shared by storage, retrieval, fusion, and orchestration."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Retrieval sources in the fixed order used for fusion and reporting.
SOURCES = ("dense", "sparse", "pattern", "graph")


# ---------------------------------------------------------------------------
# Persisted (written by ingestion, read-only at query time)
# ---------------------------------------------------------------------------

@dataclass
class Repository:
    repo_id: str
    name: str
    version: Optional[str] = None
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    indexed_at: Optional[str] = None
    embedding_model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Filled in when read back from storage
    entity_count: int = 0
    chunk_count: int = 0


@dataclass
class Entity:
    entity_id: str
    repo: str
    name: str
    qualname: str = ""
    kind: str = "symbol"
    file_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.qualname:
            self.qualname = self.name


@dataclass
class Relationship:
    src: str
    dst: str
    kind: str
    strength: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.strength <= 1.0:
            raise ValueError(
                f"Relationship strength must be within [0, 1], got {self.strength}"
            )


@dataclass
class Chunk:
    """Unit of retrievable content.

    ``entity_id`` is set when the chunk belongs to an entity; ``embedding``
    is set only when the chunk has been embedded.
    """

    chunk_id: str
    repo: str
    content: str
    entity_id: Optional[str] = None
    chunk_type: str = "code"
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Per-request (never persisted)
# ---------------------------------------------------------------------------

@dataclass
class ScoredCandidate:
    chunk_id: str
    repo: str
    content: str
    raw_score: float
    source: str
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StrategyResult:
    """Output of one retrieval strategy.

    ``status`` is ``"ok"``, ``"empty"`` or ``"degraded"`` (an optional backing
    capability is missing, so the strategy returned nothing by design).
    """

    source: str
    candidates: List[ScoredCandidate]
    elapsed: float = 0.0
    status: str = "ok"


@dataclass
class FusedResult:
    chunk_id: str
    repo: str
    content: str
    fused_score: float
    per_source_scores: Dict[str, float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    entity_id: Optional[str] = None
    truncated: bool = False

    @property
    def sources(self) -> List[str]:
        return [s for s in SOURCES if s in self.per_source_scores]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QueryAnalysis:
    query_type: str
    confidence: float
    weights: Dict[str, float]
    reasoning: str
    detected_identifiers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QueryMetrics:
    """Elapsed seconds per stage; ``total`` is wall-clock, not a sum."""

    dense: float = 0.0
    sparse: float = 0.0
    pattern: float = 0.0
    graph: float = 0.0
    fusion: float = 0.0
    total: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class SourceCoverage:
    status: str = "empty"
    candidates: int = 0
    contributed: int = 0
    fraction: float = 0.0
    error: Optional[str] = None


@dataclass
class CoverageReport:
    sources: Dict[str, SourceCoverage] = field(
        default_factory=lambda: {s: SourceCoverage() for s in SOURCES}
    )

    @property
    def dense(self) -> float:
        return self.sources["dense"].fraction

    @property
    def sparse(self) -> float:
        return self.sources["sparse"].fraction

    @property
    def pattern(self) -> float:
        return self.sources["pattern"].fraction

    @property
    def graph(self) -> float:
        return self.sources["graph"].fraction

    def degraded_sources(self) -> List[str]:
        return [s for s in SOURCES if self.sources[s].status in ("degraded", "failed", "timeout")]

    def to_dict(self) -> Dict[str, Any]:
        return {name: asdict(cov) for name, cov in self.sources.items()}


@dataclass
class ResultEnvelope:
    results: List[FusedResult]
    analysis: QueryAnalysis
    metrics: QueryMetrics
    coverage: CoverageReport
    explanations: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "results": [r.to_dict() for r in self.results],
            "analysis": self.analysis.to_dict(),
            "metrics": self.metrics.to_dict(),
            "coverage": self.coverage.to_dict(),
        }
        if self.explanations is not None:
            payload["explanations"] = list(self.explanations)
        return payload


# ---------------------------------------------------------------------------
# Direct graph queries
# ---------------------------------------------------------------------------

@dataclass
class ReachedEntity:
    entity: Entity
    hops: int
    path_strength: float
    via: Optional[str] = None


@dataclass
class DependencyReport:
    root: Entity
    depth: int
    min_strength: float
    direction: str
    entities: List[ReachedEntity]
    relationships: List[Relationship]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrossReference:
    from_repo: str
    from_entity: str
    to_repo: str
    to_entity: str
    kind: str
    strength: float
    hops: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
