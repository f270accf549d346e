"""Configuration manager for repograph using TOML files."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from . import config
from .config import CONFIG_FILE

logger = logging.getLogger(__name__)

VECTOR_BACKENDS = ("lance", "exact", "none")


@dataclass
class RetrievalSettings:
    """Tunable retrieval policy, read from the ``[retrieval]`` table."""

    vector_backend: str = config.DEFAULT_VECTOR_BACKEND
    strategy_timeout: float = config.DEFAULT_STRATEGY_TIMEOUT
    graph_depth: int = config.DEFAULT_GRAPH_DEPTH
    graph_min_strength: float = config.DEFAULT_GRAPH_MIN_STRENGTH
    xref_min_strength: float = config.DEFAULT_XREF_MIN_STRENGTH
    default_limit: int = config.DEFAULT_LIMIT
    max_tokens: int = config.DEFAULT_MAX_TOKENS
    max_workers: int = config.DEFAULT_MAX_WORKERS
    embedding_dim: int = config.DEFAULT_EMBEDDING_DIM

    def __post_init__(self) -> None:
        if self.vector_backend not in VECTOR_BACKENDS:
            raise ValueError(
                f"Unknown vector backend: '{self.vector_backend}'. "
                f"Available: {', '.join(VECTOR_BACKENDS)}"
            )
        if self.strategy_timeout <= 0:
            raise ValueError("strategy_timeout must be positive")
        if self.graph_depth < 1:
            raise ValueError("graph_depth must be at least 1")
        for name in ("graph_min_strength", "xref_min_strength"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.default_limit < 1 or self.max_workers < 1 or self.embedding_dim < 1:
            raise ValueError("default_limit, max_workers and embedding_dim must be positive")
        if self.max_tokens < 0:
            raise ValueError("max_tokens must not be negative")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RetrievalSettings":
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in payload.items():
            if key not in known:
                logger.debug("Ignoring unknown retrieval setting '%s'", key)
                continue
            default = getattr(cls, key)
            kwargs[key] = type(default)(value)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_full_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    path = path or CONFIG_FILE
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return toml.load(f)


def _save_full_config(payload: Dict[str, Any], path: Optional[Path] = None) -> None:
    """Write entire config dict to TOML file, preserving all sections."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        toml.dump(payload, f)


def load_retrieval_config(path: Optional[Path] = None) -> RetrievalSettings:
    """Load retrieval settings from the ``[retrieval]`` section.

    Falls back to defaults when the file or the section is missing.
    Invalid values raise :class:`ValueError`.
    """
    full = load_full_config(path)
    return RetrievalSettings.from_dict(full.get("retrieval", {}))


def save_retrieval_config(settings: RetrievalSettings, path: Optional[Path] = None) -> None:
    """Save retrieval settings, preserving the other sections of the file."""
    full = load_full_config(path)
    full["retrieval"] = settings.to_dict()
    _save_full_config(full, path)


def set_retrieval_value(key: str, value: str, path: Optional[Path] = None) -> RetrievalSettings:
    """Update a single retrieval setting from its string form and persist it."""
    current = load_retrieval_config(path).to_dict()
    if key not in current:
        raise KeyError(f"Unknown retrieval setting: '{key}'")
    current[key] = value
    settings = RetrievalSettings.from_dict(current)
    save_retrieval_config(settings, path)
    return settings
