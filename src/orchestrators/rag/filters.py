"""Post-retrieval filters applied while compiling context (stage 5)."""

import logging
from datetime import date, datetime

from src.contracts.rag_search_v1 import AmountRange, DateRange, Filters, UnifiedSearchResult

logger = logging.getLogger(__name__)


def result_date(result: UnifiedSearchResult) -> date | None:
    """Document date from metadata, else the row's creation timestamp."""
    raw = result.metadata.get("date") or result.created_at
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def filter_by_date(results: list[UnifiedSearchResult], date_range: DateRange) -> list[UnifiedSearchResult]:
    kept = []
    for result in results:
        day = result_date(result)
        # Undated rows (analysis aggregates) are not date-scoped.
        if day is None or date_range.contains(day):
            kept.append(result)
    return kept


def filter_by_amount(results: list[UnifiedSearchResult], amount_range: AmountRange) -> list[UnifiedSearchResult]:
    kept = []
    for result in results:
        amount = result.amount()
        if amount is None or amount_range.accepts(amount):
            kept.append(result)
    return kept


def filter_by_status(results: list[UnifiedSearchResult], status: str) -> list[UnifiedSearchResult]:
    wanted = {s.strip().lower() for s in status.split(",") if s.strip()}
    if not wanted:
        return results
    return [
        r for r in results
        if not r.metadata.get("status") or str(r.metadata["status"]).lower() in wanted
    ]


def apply_additional_filters(results: list[UnifiedSearchResult], filters: Filters) -> list[UnifiedSearchResult]:
    """Date, then amount, then claim status. Never mutates a result."""
    filtered = results
    if filters.date_range is not None:
        filtered = filter_by_date(filtered, filters.date_range)
    if filters.amount_range is not None:
        filtered = filter_by_amount(filtered, filters.amount_range)
    if filters.status:
        filtered = filter_by_status(filtered, filters.status)
    if len(filtered) != len(results):
        logger.info("Filters kept %d of %d results", len(filtered), len(results))
    return filtered
