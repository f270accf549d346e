"""Rule-based query classification and fusion-weight selection.

The analyzer is a pure function of the query string and the static policy
tables below, optionally consulting an entity-name lookup so that a query
naming a known entity is classified with full confidence.  Identical input
always produces an identical :class:`~repograph.models.QueryAnalysis`.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidQuery
from .lexical import STOPWORDS, extract_identifiers, looks_like_identifier, wildcard_count
from .models import SOURCES, QueryAnalysis

logger = logging.getLogger(__name__)

QUERY_TYPES = ("identifier", "structural", "conceptual", "relationship", "mixed")

# Bump whenever a profile below changes; results are only comparable
# across runs that used the same profile version.
WEIGHT_PROFILE_VERSION = "1"

WEIGHT_PROFILES: Dict[str, Dict[str, float]] = {
    "identifier":   {"dense": 0.10, "sparse": 0.40, "pattern": 0.35, "graph": 0.15},
    "structural":   {"dense": 0.05, "sparse": 0.20, "pattern": 0.65, "graph": 0.10},
    "conceptual":   {"dense": 0.60, "sparse": 0.25, "pattern": 0.05, "graph": 0.10},
    "relationship": {"dense": 0.10, "sparse": 0.20, "pattern": 0.10, "graph": 0.60},
    "mixed":        {"dense": 0.30, "sparse": 0.30, "pattern": 0.20, "graph": 0.20},
}

MIXED_THRESHOLD = 0.5
MAX_QUERY_LENGTH = 2000

RELATIONSHIP_PHRASES = (
    "what uses", "what calls", "who calls", "what depends on", "depends on",
    "what extends", "what implements", "what imports", "dependencies of",
    "dependents of", "callers of", "related to", "connected to", "references to",
)

CONCEPTUAL_WORDS = {
    "about", "between", "best", "could", "describe", "difference", "example",
    "guide", "handle", "handled", "handles", "happen", "happens", "implement",
    "implemented", "mean", "means", "overview", "practice", "purpose", "should",
    "tutorial", "would",
}

# Code-shape tokens that mark a structural query even without wildcards.
_CODE_SHAPE_RE = re.compile(r"\b(?:def|class|function|interface|fn|func)\s|\(\)|=>|->|::")

_EDGE_PUNCT = "?!,;:\"'`"


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Scale *weights* to sum to 1.0 over all sources.

    Missing sources count as 0; negative values are clamped to 0.  When
    nothing is left, every source gets an equal share.
    """
    cleaned = {s: max(0.0, float(weights.get(s, 0.0))) for s in SOURCES}
    total = sum(cleaned.values())
    if total <= 0:
        return {s: 1.0 / len(SOURCES) for s in SOURCES}
    return {s: cleaned[s] / total for s in SOURCES}


def validate_query(query: str) -> str:
    """Return the stripped query or raise :class:`InvalidQuery`."""
    if query is None or not query.strip():
        raise InvalidQuery("Query must not be empty")
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidQuery(
            f"Query is {len(query)} characters long, the maximum is {MAX_QUERY_LENGTH}",
            {"length": len(query)},
        )
    if "\x00" in query:
        raise InvalidQuery("Query contains NUL characters")
    return query.strip()


class QueryAnalyzer:
    """Classifies queries into a type, a confidence and a weight vector."""

    def __init__(self, entity_lookup: Optional[Callable[[str], bool]] = None) -> None:
        self.entity_lookup = entity_lookup

    def analyze(
        self,
        query: str,
        force_type: Optional[str] = None,
        force_weights: Optional[Mapping[str, float]] = None,
    ) -> QueryAnalysis:
        text = validate_query(query)
        identifiers = extract_identifiers(text)

        if force_type is not None:
            if force_type not in WEIGHT_PROFILES:
                raise InvalidQuery(
                    f"Unknown query type: '{force_type}'. Available: {', '.join(QUERY_TYPES)}"
                )
            weights = force_weights if force_weights is not None else WEIGHT_PROFILES[force_type]
            return QueryAnalysis(
                query_type=force_type,
                confidence=1.0,
                weights=normalize_weights(weights),
                reasoning=f"Forced classification: {force_type}",
                detected_identifiers=identifiers,
            )
        if force_weights is not None:
            return QueryAnalysis(
                query_type="mixed",
                confidence=1.0,
                weights=normalize_weights(force_weights),
                reasoning="Caller-supplied weights",
                detected_identifiers=identifiers,
            )

        query_type, confidence, reasoning = self._classify(text, identifiers)
        if confidence < MIXED_THRESHOLD and query_type != "mixed":
            reasoning = f"Low confidence ({confidence:.2f}) for {query_type}: {reasoning}"
            query_type = "mixed"

        analysis = QueryAnalysis(
            query_type=query_type,
            confidence=round(confidence, 4),
            weights=normalize_weights(WEIGHT_PROFILES[query_type]),
            reasoning=reasoning,
            detected_identifiers=identifiers,
        )
        logger.debug(
            "Classified %r as %s (confidence %.2f)", text, query_type, analysis.confidence,
        )
        return analysis

    def adjust_weights(
        self, base: Mapping[str, float], adjustments: Mapping[str, float],
    ) -> Dict[str, float]:
        """Override individual source weights, then renormalise."""
        merged = dict(base)
        merged.update(adjustments)
        return normalize_weights(merged)

    # ------------------------------------------------------------------

    def _classify(self, text: str, identifiers: List[str]) -> Tuple[str, float, str]:
        lower = text.lower()

        if any(phrase in lower for phrase in RELATIONSHIP_PHRASES):
            return "relationship", 0.8, "Query asks about dependencies or relationships between entities"

        if not any(ch.isspace() for ch in text) and looks_like_identifier(text):
            if self.entity_lookup is not None and self.entity_lookup(text):
                return "identifier", 1.0, "Query exactly matches a known entity"
            if identifiers:
                return "identifier", 0.9, "Query matches a code-identifier pattern"
            return "mixed", 0.4, "Single word with no identifier shape and no entity match"

        specials = wildcard_count(text.rstrip("?"))
        if specials >= 2:
            return "structural", 0.8, f"Query contains {specials} wildcard or pattern characters"
        if _CODE_SHAPE_RE.search(text):
            return "structural", 0.7, "Query contains code-shape tokens"
        if "*" in text or "?" in text.rstrip("?"):
            return "structural", 0.6, "Query contains a glob wildcard"

        conceptual = 0
        identifier_like = 0
        ident_set = set(identifiers)
        for word in text.split():
            word = word.strip(_EDGE_PUNCT)
            if not word:
                continue
            if word in ident_set or (looks_like_identifier(word) and extract_identifiers(word)):
                identifier_like += 1
            elif word.lower() in STOPWORDS or word.lower() in CONCEPTUAL_WORDS:
                conceptual += 1

        total = conceptual + identifier_like
        if total == 0:
            return "mixed", 0.4, "No conceptual or identifier indicators"
        if conceptual > identifier_like:
            confidence = 0.5 + 0.5 * conceptual / total
            return (
                "conceptual",
                confidence,
                f"Natural-language phrasing ({conceptual} conceptual vs {identifier_like} identifier tokens)",
            )
        if identifier_like > conceptual:
            confidence = 0.5 + 0.5 * identifier_like / total
            return (
                "identifier",
                confidence,
                f"Query contains code identifiers: {', '.join(identifiers[:3])}",
            )
        return "mixed", 0.5, "Query mixes identifiers with natural language"
