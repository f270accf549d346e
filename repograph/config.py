"""Configuration paths and retrieval defaults for the local knowledge base."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("REPOGRAPH_HOME", str(Path.home() / ".repograph"))).expanduser()
DATA_DIR = BASE_DIR / "data"
CONFIG_FILE = BASE_DIR / "config.toml"

DEFAULT_EMBEDDING_DIM = 256

# Retrieval policy defaults (overridable via the [retrieval] table of config.toml)
DEFAULT_VECTOR_BACKEND = "lance"
DEFAULT_STRATEGY_TIMEOUT = 5.0
DEFAULT_GRAPH_DEPTH = 2
DEFAULT_GRAPH_MIN_STRENGTH = 0.5
DEFAULT_XREF_MIN_STRENGTH = 0.7
DEFAULT_LIMIT = 20
DEFAULT_MAX_TOKENS = 500
DEFAULT_MAX_WORKERS = 4


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
