"""Fallback retrieval: the expanding date-window ladder and legacy text search.

The ladder runs when a date-filtered search finds nothing: it widens the
window step by step and stops at the first window with receipts. Legacy text
search is the orchestrator's last resort when a pipeline stage fails; it
needs no embedding and scores rows by plain word overlap.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta

from src.contracts.rag_search_v1 import (
    AccessLevel,
    DateRange,
    SourceType,
    UnifiedSearchResult,
)
from src.orchestrators.rag.constants import (
    FALLBACK_MIN_LIMIT,
    FALLBACK_SIMILARITY,
    RECENT_RECEIPTS_DAYS,
    TEXT_CONTAINS_SCORE,
    TEXT_MIN_RELEVANCE,
    TEXT_OVERLAP_CAP,
    FallbackWindowName,
    SearchMethod,
)
from src.orchestrators.rag.context import PipelineContext
from src.orchestrators.rag.errors import AuthError, RetrievalError
from src.orchestrators.rag.filters import apply_additional_filters
from src.orchestrators.rag.preprocessor import normalize_query
from src.orchestrators.rag.store import DataStore
from src.orchestrators.rag.strategies import NamedStrategy, StrategyOutcome, run_strategy_chain
from src.orchestrators.rag.temporal_parser import shift_months
from src.orchestrators.rag.transform import receipt_row_to_result, sort_by_similarity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Expanding date windows
# ---------------------------------------------------------------------------


def _previous_months(today: date, months: int) -> DateRange:
    first_of_month = today.replace(day=1)
    return DateRange(
        start=shift_months(first_of_month, -months),
        end=first_of_month - timedelta(days=1),
    )


@dataclass(frozen=True)
class FallbackWindow:
    name: FallbackWindowName
    resolve: Callable[[date], DateRange]


FALLBACK_WINDOWS: tuple[FallbackWindow, ...] = (
    FallbackWindow(FallbackWindowName.LAST_2_MONTHS, lambda today: _previous_months(today, 2)),
    FallbackWindow(FallbackWindowName.LAST_3_MONTHS, lambda today: _previous_months(today, 3)),
    FallbackWindow(
        FallbackWindowName.RECENT_RECEIPTS,
        lambda today: DateRange(start=today - timedelta(days=RECENT_RECEIPTS_DAYS), end=today),
    ),
)


def _window_strategy(store: DataStore, window: FallbackWindow, original: DateRange) -> NamedStrategy:
    async def run(ctx: PipelineContext) -> StrategyOutcome:
        expanded = window.resolve(ctx.today)
        limit = max(ctx.request.limit, FALLBACK_MIN_LIMIT)
        logger.info("Fallback window %s: %s to %s", window.name, expanded.start, expanded.end)
        rows = await store.receipts_in_range(ctx.user_id, expanded, limit)
        extra = {
            "fallback_strategy": str(window.name),
            "original_date_range": original.model_dump(mode="json"),
            "expanded_date_range": expanded.model_dump(mode="json"),
        }
        results = [
            receipt_row_to_result(row, similarity=FALLBACK_SIMILARITY, extra_metadata=extra)
            for row in rows
        ]
        return StrategyOutcome(
            results=results,
            search_method=SearchMethod.FALLBACK_TEMPORAL,
            notes={"fallback_strategy": str(window.name), "expanded_date_range": expanded},
        )

    return NamedStrategy(name=str(window.name), run=run)


async def expand_date_range(ctx: PipelineContext, store: DataStore, original: DateRange) -> StrategyOutcome:
    """Walk the window ladder; an exhausted ladder is an empty result, not an error."""
    if not ctx.user_id:
        raise AuthError("User context missing for fallback temporal search")

    strategies = [_window_strategy(store, window, original) for window in FALLBACK_WINDOWS]
    try:
        chain = await run_strategy_chain(ctx, strategies)
    except RetrievalError as e:
        logger.warning("Every fallback window failed: %s", e)
        chain = None

    meta = ctx.metadata
    meta.fallback_strategies_tried = chain.tried if chain else [s.name for s in strategies]

    if chain is not None and chain.outcome is not None and chain.outcome.results:
        outcome = chain.outcome
        name = outcome.notes["fallback_strategy"]
        meta.record_source(f"fallback_temporal_{name}")
        meta.is_fallback_result = True
        meta.fallback_strategy = name
        meta.original_date_range = original
        meta.expanded_date_range = outcome.notes["expanded_date_range"]
        return outcome

    meta.original_date_range = original
    return StrategyOutcome(
        results=[],
        search_method=SearchMethod.FALLBACK_TEMPORAL_FAILED,
        notes={"fallback_strategies_tried": list(meta.fallback_strategies_tried)},
    )


# ---------------------------------------------------------------------------
# Legacy text search
# ---------------------------------------------------------------------------


def calculate_text_similarity(query: str, text: str | None) -> float:
    """0.9 on containment, else the share of query words found (capped at 0.8)."""
    if not text:
        return 0.0
    q = query.lower()
    t = text.lower()
    if q in t:
        return TEXT_CONTAINS_SCORE
    query_words = q.split()
    if not query_words:
        return 0.0
    text_words = t.split()
    matches = sum(
        1 for qw in query_words if any(tw in qw or qw in tw for tw in text_words)
    )
    return min(TEXT_OVERLAP_CAP, matches / len(query_words))


def _joined(*parts: object) -> str:
    return " ".join(str(p) for p in parts if p)


async def _receipts(ctx: PipelineContext, store: DataStore, term: str) -> list[UnifiedSearchResult]:
    rows = await store.text_search_receipts(
        ctx.user_id, term, ctx.request.limit * 2, ctx.active_filters.amount_range
    )
    results = []
    for row in rows:
        score = calculate_text_similarity(
            term, _joined(row.get("merchant"), row.get("fullText"), row.get("predicted_category"))
        )
        if score <= TEXT_MIN_RELEVANCE:
            continue
        results.append(
            UnifiedSearchResult(
                id=str(row["id"]),
                source_type=SourceType.RECEIPT,
                source_id=str(row["id"]),
                content_type="full_text",
                title=row.get("merchant") or "Unknown Merchant",
                description=(
                    f"{row.get('currency') or ''} {row.get('total') or 'N/A'} "
                    f"on {row.get('date') or 'Unknown date'}"
                ),
                similarity=score,
                metadata={
                    "merchant": row.get("merchant"),
                    "total": row.get("total"),
                    "currency": row.get("currency"),
                    "date": row.get("date"),
                    "status": row.get("status"),
                    "category": row.get("predicted_category"),
                },
                access_level=AccessLevel.USER,
                created_at=row.get("created_at"),
            )
        )
    return results


async def _businesses(ctx: PipelineContext, store: DataStore, term: str) -> list[UnifiedSearchResult]:
    rows = await store.text_search_business_directory(term, ctx.request.limit)
    results = []
    for row in rows:
        score = calculate_text_similarity(
            term,
            _joined(row.get("business_name"), row.get("business_name_malay"), row.get("business_type")),
        )
        if score <= TEXT_MIN_RELEVANCE:
            continue
        results.append(
            UnifiedSearchResult(
                id=str(row["id"]),
                source_type=SourceType.BUSINESS_DIRECTORY,
                source_id=str(row["id"]),
                content_type="business_name",
                title=row.get("business_name") or "Business",
                description=(
                    f"{row.get('business_type') or 'Business'} in "
                    f"{row.get('city') or row.get('state') or 'Malaysia'}"
                ),
                similarity=score,
                metadata={
                    "business_name": row.get("business_name"),
                    "business_name_malay": row.get("business_name_malay"),
                    "business_type": row.get("business_type"),
                    "state": row.get("state"),
                    "city": row.get("city"),
                },
                access_level=AccessLevel.PUBLIC,
                created_at=row.get("created_at"),
            )
        )
    return results


async def _claims(ctx: PipelineContext, store: DataStore, term: str) -> list[UnifiedSearchResult]:
    team_id = ctx.team_id
    if not team_id:
        return []
    rows = await store.text_search_claims(team_id, term, ctx.request.limit)
    results = []
    for row in rows:
        score = calculate_text_similarity(term, _joined(row.get("title"), row.get("description")))
        if score <= TEXT_MIN_RELEVANCE:
            continue
        results.append(
            UnifiedSearchResult(
                id=str(row["id"]),
                source_type=SourceType.CLAIM,
                source_id=str(row["id"]),
                content_type="title",
                title=row.get("title") or "Untitled Claim",
                description=row.get("description") or "No description",
                similarity=score,
                metadata={
                    "title": row.get("title"),
                    "status": row.get("status"),
                    "priority": row.get("priority"),
                    "amount": row.get("amount"),
                    "currency": row.get("currency"),
                },
                access_level=AccessLevel.TEAM,
                created_at=row.get("created_at"),
            )
        )
    return results


async def _categories(ctx: PipelineContext, store: DataStore, term: str) -> list[UnifiedSearchResult]:
    rows = await store.text_search_custom_categories(ctx.user_id, term, ctx.request.limit)
    results = []
    for row in rows:
        score = calculate_text_similarity(term, row.get("name"))
        if score <= TEXT_MIN_RELEVANCE:
            continue
        results.append(
            UnifiedSearchResult(
                id=str(row["id"]),
                source_type=SourceType.CUSTOM_CATEGORY,
                source_id=str(row["id"]),
                content_type="name",
                title=row.get("name") or "Custom Category",
                description=f"Category: {row.get('name') or 'Unnamed'}",
                similarity=score,
                metadata={
                    "name": row.get("name"),
                    "color": row.get("color"),
                    "icon": row.get("icon"),
                },
                access_level=AccessLevel.USER,
                created_at=row.get("created_at"),
            )
        )
    return results


_TEXT_SOURCES = {
    SourceType.RECEIPT: _receipts,
    SourceType.BUSINESS_DIRECTORY: _businesses,
    SourceType.CLAIM: _claims,
    SourceType.CUSTOM_CATEGORY: _categories,
}


async def legacy_text_search(ctx: PipelineContext, store: DataStore) -> list[UnifiedSearchResult]:
    """Text search over every requested source that supports it.

    A failing source is skipped; raises RetrievalError only when all of them
    fail.
    """
    term = normalize_query(ctx.request.query)
    searches = [
        (source, _TEXT_SOURCES[source])
        for source in ctx.request.sources
        if source in _TEXT_SOURCES
    ]
    outcomes = await asyncio.gather(
        *(search(ctx, store, term) for _, search in searches), return_exceptions=True
    )

    results: list[UnifiedSearchResult] = []
    failures: list[str] = []
    for (source, _), outcome in zip(searches, outcomes):
        if isinstance(outcome, RetrievalError):
            logger.warning("Legacy text search over %s failed: %s", source, outcome)
            failures.append(str(source))
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        results.extend(outcome)
        ctx.metadata.record_source(f"{SearchMethod.LEGACY_TEXT}:{source}")

    if searches and len(failures) == len(searches):
        raise RetrievalError(f"Legacy text search failed for {', '.join(failures)}")

    filtered = apply_additional_filters(sort_by_similarity(results), ctx.active_filters)
    offset = ctx.request.offset
    return filtered[offset : offset + ctx.request.limit]
