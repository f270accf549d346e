"""Embedding provider interface and the bundled zero-dependency provider.

The retrieval engine only *consumes* vectors: a provider turns the raw query
string into a query embedding for dense retrieval.  Model inference lives
outside this package; any object with ``embed_text(str) -> List[float]``
satisfies :class:`EmbeddingProvider`.
"""

from __future__ import annotations

import math
import re
from hashlib import blake2b
from typing import List, Optional, Protocol, Sequence

from .config import DEFAULT_EMBEDDING_DIM

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class EmbeddingProvider(Protocol):
    def embed_text(self, text: str) -> List[float]:
        ...


class HashEmbeddingModel:
    """Deterministic token-hashing embedder, no ML dependencies.

    Provides keyword-level similarity only. Used as the default provider so
    the dense path works end-to-end without a model download.
    """

    model_key = "hash"

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        self.dim = dim

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return l2_normalize(vec)


def get_embedder(dim: Optional[int] = None) -> HashEmbeddingModel:
    """Return the bundled provider sized to *dim* (or the configured default)."""
    return HashEmbeddingModel(dim or DEFAULT_EMBEDDING_DIM)


# ===================================================================
# Vector math
# ===================================================================

def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity between two vectors, in ``[-1, 1]``.

    Zero-length or mismatched vectors return ``0.0``.
    """
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def cosine_distance(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """``1 - cosine_similarity``, in ``[0, 2]`` (LanceDB's cosine metric)."""
    return 1.0 - cosine_similarity(vec_a, vec_b)


def distance_to_similarity(distance: float) -> float:
    """Map a cosine distance in ``[0, 2]`` onto a similarity in ``[0, 1]``."""
    return max(0.0, min(1.0, 1.0 - distance / 2.0))


def l2_normalize(vec: List[float]) -> List[float]:
    """L2-normalise *vec*.  Returns a zero vector unchanged."""
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]


def validate_embedding(vec: Sequence[float], dim: Optional[int] = None) -> List[str]:
    """Return a list of problems with *vec* (empty when it is usable)."""
    problems: List[str] = []
    if not vec:
        return ["empty vector"]
    if dim is not None and len(vec) != dim:
        problems.append(f"dimension {len(vec)} != {dim}")
    if any(math.isnan(v) or math.isinf(v) for v in vec):
        problems.append("contains NaN or Inf")
    return problems
