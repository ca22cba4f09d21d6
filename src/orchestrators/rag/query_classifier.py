"""Pluggable query classifier: monetary vs line-item/product vs general.

The router only depends on the `QueryClassifier` protocol, so the keyword
heuristics below can be replaced by a learned model without touching it.
Monetary detection always runs first and suppresses product detection.
"""

import re
from typing import Protocol

from src.orchestrators.rag.constants import (
    LINE_ITEM_INDICATORS,
    NON_PRODUCT_TEMPORAL_PHRASES,
    PRODUCT_STOP_WORDS,
    QueryCategory,
)

MONETARY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(over|above|more\s+than|greater\s+than)\s*(\$|rm|myr)?\s*(\d+(?:\.\d{2})?)", re.I),
    re.compile(r"\b(under|below|less\s+than|cheaper\s+than)\s*(\$|rm|myr)?\s*(\d+(?:\.\d{2})?)", re.I),
    re.compile(r"(\$|\brm|\bmyr)?\s*\b(\d+(?:\.\d{2})?)\s*(?:to|[-–]|and)\s*(\$|rm|myr)?\s*(\d+(?:\.\d{2})?)", re.I),
    re.compile(
        r"\b(receipts?|expenses?|transactions?|purchases?|bills?)\s+"
        r"(over|above|more\s+than|greater\s+than|under|below|less\s+than)\s+(\d+(?:\.\d{2})?)",
        re.I,
    ),
)

_INDICATOR_PATTERNS = tuple(
    re.compile(r"\b" + re.escape(indicator) + r"\b") for indicator in LINE_ITEM_INDICATORS
)
_NON_WORD = re.compile(r"[^\w\s]")


def is_monetary_query(query: str) -> bool:
    return any(p.search(query) for p in MONETARY_PATTERNS)


def has_line_item_indicator(query: str) -> bool:
    text = query.lower()
    return any(p.search(text) for p in _INDICATOR_PATTERNS)


def is_potential_product_name(query: str) -> bool:
    """Heuristics for bare product names: "powercat", "coca cola", "100plus"."""
    text = query.lower().strip()
    if any(phrase in text for phrase in NON_PRODUCT_TEMPORAL_PHRASES):
        return False
    cleaned = _NON_WORD.sub("", text).strip()
    words = cleaned.split()

    if len(words) == 1:
        word = words[0]
        if word not in PRODUCT_STOP_WORDS and 3 <= len(word) <= 20:
            return True

    if len(words) == 2 and all(
        w not in PRODUCT_STOP_WORDS and 2 <= len(w) <= 15 for w in words
    ):
        return True

    if re.search(r"\d", cleaned) and len(cleaned) <= 20 and re.search(r"[a-z]", cleaned):
        return True

    return False


class QueryClassifier(Protocol):
    def classify(self, query: str) -> QueryCategory: ...


class KeywordQueryClassifier:
    """Curated keyword list plus product-name heuristics."""

    def classify(self, query: str) -> QueryCategory:
        text = (query or "").lower().strip()
        if not text:
            return QueryCategory.GENERAL
        if is_monetary_query(text):
            return QueryCategory.MONETARY
        if has_line_item_indicator(text) or is_potential_product_name(text):
            return QueryCategory.LINE_ITEM
        return QueryCategory.GENERAL


def is_line_item_query(query: str, classifier: QueryClassifier | None = None) -> bool:
    return (classifier or KeywordQueryClassifier()).classify(query) == QueryCategory.LINE_ITEM
