"""Turn raw store rows into UnifiedSearchResult values.

Candidate rows from the hybrid procedure are deduplicated per entity first,
then each survivor is enriched from its own table. Enrichment calls run
concurrently; their completion order is irrelevant because the output is
re-sorted by similarity before it is returned.
"""

import asyncio
import logging
import math
from typing import Any

from src.contracts.rag_search_v1 import AccessLevel, SourceType, UnifiedSearchResult
from src.orchestrators.rag.constants import DATE_FILTER_SIMILARITY
from src.orchestrators.rag.errors import RetrievalError
from src.orchestrators.rag.store import ENRICHMENT_COLUMNS, DataStore, Row

logger = logging.getLogger(__name__)

ACCESS_LEVELS: dict[SourceType, AccessLevel] = {
    SourceType.RECEIPT: AccessLevel.USER,
    SourceType.CUSTOM_CATEGORY: AccessLevel.USER,
    SourceType.CLAIM: AccessLevel.TEAM,
    SourceType.TEAM_MEMBER: AccessLevel.TEAM,
    SourceType.BUSINESS_DIRECTORY: AccessLevel.PUBLIC,
    SourceType.LINE_ITEM: AccessLevel.USER,
    SourceType.FINANCIAL_ANALYSIS: AccessLevel.USER,
    SourceType.CONVERSATION: AccessLevel.USER,
}

SOURCE_TABLES: dict[SourceType, str] = {
    SourceType.RECEIPT: "receipts",
    SourceType.CLAIM: "claims",
    SourceType.TEAM_MEMBER: "team_members",
    SourceType.CUSTOM_CATEGORY: "custom_categories",
    SourceType.BUSINESS_DIRECTORY: "malaysian_business_directory",
}


def access_level_for(source_type: SourceType) -> AccessLevel:
    return ACCESS_LEVELS.get(source_type, AccessLevel.USER)


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(f) else f


def row_score(row: Row) -> float:
    """Similarity of a raw row, falling back to the combined score."""
    score = _number(row.get("similarity"))
    if score is None:
        score = _number(row.get("combined_score"))
    return score or 0.0


def _ranking_score(row: Row) -> float:
    score = _number(row.get("combined_score"))
    if score is None:
        score = _number(row.get("similarity"))
    return score or 0.0


def row_source_type(row: Row) -> SourceType | None:
    try:
        return SourceType(str(row.get("source_type") or ""))
    except ValueError:
        return None


def dedupe_rows(rows: list[Row]) -> list[Row]:
    """Keep the best-scoring row per (source_type, source_id); first wins ties."""
    best: dict[tuple[str, str], Row] = {}
    for row in rows:
        key = (str(row.get("source_type")), str(row.get("source_id")))
        current = best.get(key)
        if current is None or _ranking_score(row) > _ranking_score(current):
            best[key] = row
    return list(best.values())


def dedupe_results(results: list[UnifiedSearchResult]) -> list[UnifiedSearchResult]:
    best: dict[tuple[str, str], UnifiedSearchResult] = {}
    for result in results:
        current = best.get(result.dedup_key)
        if current is None or result.similarity > current.similarity:
            best[result.dedup_key] = result
    return list(best.values())


def sort_by_similarity(results: list[UnifiedSearchResult]) -> list[UnifiedSearchResult]:
    # Stable: equal scores keep a deterministic (id) order regardless of gather order.
    return sorted(results, key=lambda r: (-r.similarity, r.id))


# ---------------------------------------------------------------------------
# Per-source enrichment
# ---------------------------------------------------------------------------


def _receipt_fields(row: Row, detail: Row) -> dict[str, Any]:
    return {
        "title": detail.get("merchant") or "Unknown Merchant",
        "description": (
            f"{detail.get('currency') or ''} {detail.get('total') or 'N/A'} "
            f"on {detail.get('date') or 'Unknown date'}"
        ),
        "metadata": {
            **(row.get("metadata") or {}),
            "merchant": detail.get("merchant"),
            "total": detail.get("total"),
            "currency": detail.get("currency"),
            "date": detail.get("date"),
            "status": detail.get("status"),
            "category": detail.get("predicted_category"),
        },
    }


def _claim_fields(row: Row, detail: Row) -> dict[str, Any]:
    return {
        "title": detail.get("title") or "Untitled Claim",
        "description": detail.get("description") or "No description",
        "metadata": {
            **(row.get("metadata") or {}),
            "title": detail.get("title"),
            "status": detail.get("status"),
            "priority": detail.get("priority"),
            "amount": detail.get("amount"),
            "currency": detail.get("currency"),
        },
    }


def _team_member_fields(row: Row, detail: Row) -> dict[str, Any]:
    profile = detail.get("profiles") or {}
    full_name = " ".join(p for p in (profile.get("first_name"), profile.get("last_name")) if p)
    return {
        "title": full_name or profile.get("email") or "Team Member",
        "description": f"{detail.get('role') or 'Member'} - {profile.get('email') or ''}",
        "metadata": {
            **(row.get("metadata") or {}),
            "role": detail.get("role"),
            "email": profile.get("email"),
            "first_name": profile.get("first_name"),
            "last_name": profile.get("last_name"),
            "status": detail.get("status"),
            "team_id": detail.get("team_id"),
        },
    }


def _custom_category_fields(row: Row, detail: Row) -> dict[str, Any]:
    return {
        "title": detail.get("name") or "Custom Category",
        "description": f"Category: {detail.get('name') or 'Unnamed'}",
        "metadata": {
            **(row.get("metadata") or {}),
            "name": detail.get("name"),
            "color": detail.get("color"),
            "icon": detail.get("icon"),
            "user_id": detail.get("user_id"),
        },
    }


def _business_fields(row: Row, detail: Row) -> dict[str, Any]:
    address = ", ".join(
        str(part)
        for part in (
            detail.get("address_line1"),
            detail.get("address_line2"),
            detail.get("city"),
            detail.get("state"),
            detail.get("postcode"),
        )
        if part
    )
    return {
        "title": detail.get("business_name") or detail.get("business_name_malay") or "Business",
        "description": (
            f"{detail.get('business_type') or 'Business'} in "
            f"{detail.get('city') or detail.get('state') or 'Malaysia'}"
        ),
        "metadata": {
            **(row.get("metadata") or {}),
            "business_name": detail.get("business_name"),
            "business_name_malay": detail.get("business_name_malay"),
            "business_type": detail.get("business_type"),
            "state": detail.get("state"),
            "city": detail.get("city"),
            "full_address": address,
            "is_active": detail.get("is_active"),
        },
    }


_ENRICHERS = {
    SourceType.RECEIPT: _receipt_fields,
    SourceType.CLAIM: _claim_fields,
    SourceType.TEAM_MEMBER: _team_member_fields,
    SourceType.CUSTOM_CATEGORY: _custom_category_fields,
    SourceType.BUSINESS_DIRECTORY: _business_fields,
}


async def _enrich(store: DataStore, row: Row) -> UnifiedSearchResult | None:
    source_type = row_source_type(row)
    if source_type not in _ENRICHERS:
        logger.debug("Skipping row with unsupported source type %r", row.get("source_type"))
        return None
    table = SOURCE_TABLES[source_type]
    source_id = str(row.get("source_id"))
    detail = await store.fetch_row(table, source_id, ENRICHMENT_COLUMNS[table]) or {}
    fields = _ENRICHERS[source_type](row, detail)
    return UnifiedSearchResult(
        id=str(row.get("id") or source_id),
        source_type=source_type,
        source_id=source_id,
        content_type=str(row.get("content_type") or "full_text"),
        similarity=row_score(row),
        access_level=access_level_for(source_type),
        created_at=row.get("created_at"),
        content_text=row.get("content_text"),
        **fields,
    )


async def transform_search_rows(store: DataStore, rows: list[Row]) -> list[UnifiedSearchResult]:
    """Dedupe, enrich concurrently, then re-sort.

    A row whose enrichment fails is dropped; the rest of the batch survives.
    """
    unique = dedupe_rows(rows)
    outcomes = await asyncio.gather(*(_enrich(store, row) for row in unique), return_exceptions=True)
    results: list[UnifiedSearchResult] = []
    for row, outcome in zip(unique, outcomes):
        if isinstance(outcome, RetrievalError):
            logger.warning("Enrichment failed for %s %s: %s", row.get("source_type"), row.get("source_id"), outcome)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            results.append(outcome)
    return sort_by_similarity(results)


# ---------------------------------------------------------------------------
# Direct-table rows
# ---------------------------------------------------------------------------


def receipt_row_to_result(
    receipt: Row,
    *,
    similarity: float = DATE_FILTER_SIMILARITY,
    extra_metadata: dict[str, Any] | None = None,
) -> UnifiedSearchResult:
    """A receipts-table row found by date, not by embedding."""
    category = receipt.get("predicted_category")
    description = f"Receipt from {receipt.get('date')}"
    if category:
        description += f" • {category}"
    return UnifiedSearchResult(
        id=str(receipt["id"]),
        source_type=SourceType.RECEIPT,
        source_id=str(receipt["id"]),
        content_type="full_text",
        title=f"{receipt.get('merchant')} - {receipt.get('currency')} {receipt.get('total')}",
        description=description,
        similarity=similarity,
        metadata={
            "merchant": receipt.get("merchant"),
            "total": receipt.get("total"),
            "currency": receipt.get("currency"),
            "date": receipt.get("date"),
            "category": category,
            "payment_method": receipt.get("payment_method"),
            "status": receipt.get("status"),
            **(extra_metadata or {}),
        },
        access_level=AccessLevel.USER,
        created_at=receipt.get("created_at"),
    )


def hybrid_temporal_row_to_result(row: Row) -> UnifiedSearchResult:
    meta = row.get("metadata") or {}
    return UnifiedSearchResult(
        id=str(row.get("id") or row.get("source_id")),
        source_type=SourceType.RECEIPT,
        source_id=str(row.get("source_id")),
        content_type=str(row.get("content_type") or "full_text"),
        title=f"{meta.get('merchant') or 'Unknown'} - {meta.get('currency') or ''} {meta.get('total') or ''}",
        description=f"{row.get('content_text') or ''} • {meta.get('date') or ''}",
        similarity=row_score(row),
        metadata=dict(meta),
        access_level=AccessLevel.USER,
        created_at=meta.get("created_at"),
        content_text=row.get("content_text"),
    )
