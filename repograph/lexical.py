"""Lexical helpers: tokenising, identifier extraction, and fuzzy similarity.

Trigrams are 3-character windows used for typo-tolerant matching, e.g.
``"useChat"`` -> ``{"  u", " us", "use", "seC", "eCh", "Cha", "hat", "at "}``.
"""

from __future__ import annotations

import re
from typing import List, Set

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")

_CAMEL_RE = re.compile(r"\b[a-z]+(?:[A-Z][a-z0-9]*)+\b|\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b")
_SNAKE_RE = re.compile(r"\b[a-z][a-z0-9]*(?:_[a-z0-9]+)+\b")
_UPPER_RE = re.compile(r"\b[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+\b")
_DOTTED_RE = re.compile(r"[@A-Za-z_][\w-]*(?:[./][\w-]+)+")

# A single whitespace-free token that reads like a symbol name.
IDENTIFIER_RE = re.compile(r"^[A-Za-z_$@][\w$]*(?:(?:\.|::|#|/)[A-Za-z_$][\w$-]*)*$")

WILDCARD_CHARS = set("*?[]{}()^$|\\+")

STOPWORDS: Set[str] = {
    "a", "an", "and", "are", "as", "at", "be", "been", "but", "by", "can",
    "do", "does", "for", "from", "how", "i", "in", "into", "is", "it", "its",
    "of", "on", "or", "that", "the", "this", "to", "was", "were", "what",
    "when", "where", "which", "who", "why", "with", "work", "works", "use",
    "used", "using", "get", "set", "find", "show", "explain", "there",
}


def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens, split the way SQLite's unicode61 tokenizer does."""
    return [t.lower() for t in _TOKEN_RE.findall(text)]


def content_terms(text: str) -> List[str]:
    """Tokens with stopwords and very short words removed, order-preserving."""
    seen: Set[str] = set()
    terms: List[str] = []
    for token in tokenize(text):
        if len(token) < 2 or token in STOPWORDS or token in seen:
            continue
        seen.add(token)
        terms.append(token)
    return terms


def extract_identifiers(text: str) -> List[str]:
    """Find code identifiers (CamelCase, snake_case, UPPER_CASE, dotted paths)."""
    found: List[str] = []
    for regex in (_DOTTED_RE, _CAMEL_RE, _SNAKE_RE, _UPPER_RE):
        for match in regex.findall(text):
            if match not in found:
                found.append(match)
    return found


def looks_like_identifier(text: str) -> bool:
    return bool(IDENTIFIER_RE.match(text.strip()))


def wildcard_count(text: str) -> int:
    return sum(1 for ch in text if ch in WILDCARD_CHARS)


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a ``*``/``?`` glob into a case-insensitive regex."""
    parts: List[str] = []
    for ch in pattern:
        if ch == "*":
            parts.append(r"[\w.:/-]*")
        elif ch == "?":
            parts.append(r"[\w.:/-]")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE)


def glob_to_like(pattern: str) -> str:
    """Translate a glob into a SQL ``LIKE`` prefilter (escape char ``\\``)."""
    out: List[str] = []
    for ch in pattern:
        if ch in ("%", "_", "\\"):
            out.append("\\" + ch)
        elif ch == "*":
            out.append("%")
        elif ch == "?":
            out.append("_")
        else:
            out.append(ch)
    return "%" + "".join(out) + "%"


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def trigrams(text: str) -> Set[str]:
    if len(text) < 3:
        return {text}
    padded = f"  {text} "
    return {padded[i:i + 3] for i in range(len(padded) - 2)}


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the two strings' trigram sets (case-insensitive)."""
    ta, tb = trigrams(a.lower()), trigrams(b.lower())
    union = ta | tb
    if not union:
        return 1.0
    return len(ta & tb) / len(union)

