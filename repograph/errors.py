"""Typed error family for retrieval, graph queries, and storage integrity."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RepographError(Exception):
    """Base class for all repograph errors.

    ``code`` is a stable machine-readable identifier surfaced to callers of
    the tool surface; ``context`` carries structured details for logging.
    """

    code = "REPOGRAPH_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class CapabilityUnavailable(RepographError):
    """An optional storage capability (vector search) is not provisioned."""

    code = "CAPABILITY_UNAVAILABLE"

    def __init__(self, capability: str) -> None:
        super().__init__(
            f"Storage capability '{capability}' is not available",
            {"capability": capability},
        )
        self.capability = capability


class StrategyFailure(RepographError):
    """One retrieval strategy raised instead of returning candidates."""

    code = "STRATEGY_FAILED"

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source} retrieval failed: {reason}", {"source": source})
        self.source = source
        self.reason = reason


class StrategyTimeout(StrategyFailure):
    """One retrieval strategy exceeded its time budget."""

    code = "STRATEGY_TIMEOUT"

    def __init__(self, source: str, timeout: float) -> None:
        super().__init__(source, f"timed out after {timeout:.2f}s")
        self.timeout = timeout


class AllStrategiesFailed(RepographError):
    """Every retrieval strategy failed or timed out for one query."""

    code = "ALL_STRATEGIES_FAILED"

    def __init__(self, failures: List[StrategyFailure]) -> None:
        reasons = {f.source: f.reason for f in failures}
        super().__init__(
            "All retrieval strategies failed: "
            + "; ".join(f"{s}: {r}" for s, r in reasons.items()),
            {"failures": reasons},
        )
        self.failures = failures


class UnknownEntity(RepographError):
    """A dependency or cross-reference request names an entity not in storage."""

    code = "UNKNOWN_ENTITY"

    def __init__(self, entity: str) -> None:
        super().__init__(f"Entity '{entity}' not found", {"entity": entity})
        self.entity = entity


class InvalidQuery(RepographError):
    """Empty or malformed query string, rejected before dispatch."""

    code = "INVALID_QUERY"


class DataIntegrityError(RepographError):
    """Stored data violates an invariant (dangling edge, dimension mismatch)."""

    code = "DATA_INTEGRITY"
