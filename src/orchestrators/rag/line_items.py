"""Line-item (product) search: exact description matches first, semantic for the rest.

Every matching line item is its own result; two "IKAN LONGGOK" lines on two
receipts are two results, so nothing here is deduplicated.
"""

import logging
import math
import re
from typing import Any

from src.contracts.rag_search_v1 import AccessLevel, SourceType, UnifiedSearchResult
from src.core.config import config
from src.orchestrators.rag.constants import (
    LINE_ITEM_DEFAULT_SIMILARITY,
    LINE_ITEM_DEFAULT_THRESHOLD,
    LINE_ITEM_EXACT_BOOST,
    LINE_ITEM_EXACT_SHARE,
    LINE_ITEM_MIXED_SCRIPT_THRESHOLD,
    LINE_ITEM_PRODUCT_THRESHOLD,
    SearchMethod,
)
from src.orchestrators.rag.context import PipelineContext
from src.orchestrators.rag.store import DataStore, HybridSearchParams, Row
from src.orchestrators.rag.strategies import StrategyOutcome
from src.orchestrators.rag.transform import row_score

logger = logging.getLogger(__name__)

_PLAIN_PRODUCT = re.compile(r"^[a-zA-Z\s]{2,20}$")
_LATIN = re.compile(r"[a-zA-Z]")
_NON_ASCII = re.compile(r"[^\x00-\x7F]")

_EXTRACT_STEPS = (
    (re.compile(r"^(find|search|show|get|look\s+for)\s+", re.I), ""),
    (re.compile(r"(?:^|\s+)(receipts?|purchases?|transactions?|expenses?)\b(\s+that|\s+with|\s+containing|\s+for)?", re.I), ""),
    (re.compile(r"\s+(that|which|with|containing|having|has|have)\s+", re.I), " "),
    (re.compile(r"\s+(in|at|from)\s+", re.I), " "),
)


def is_specific_product(query: str) -> bool:
    return bool(_PLAIN_PRODUCT.match(query.strip()))


def has_mixed_script(query: str) -> bool:
    return bool(_LATIN.search(query)) and bool(_NON_ASCII.search(query))


def adaptive_threshold(query: str) -> float:
    text = query.strip().lower()
    if _PLAIN_PRODUCT.match(text):
        return LINE_ITEM_PRODUCT_THRESHOLD
    if has_mixed_script(text):
        return LINE_ITEM_MIXED_SCRIPT_THRESHOLD
    return LINE_ITEM_DEFAULT_THRESHOLD


def extract_item_name(query: str) -> str:
    """Strip search verbs and document nouns: "find receipts with nasi lemak" -> "nasi lemak"."""
    extracted = query
    for pattern, replacement in _EXTRACT_STEPS:
        extracted = pattern.sub(replacement, extracted)
    extracted = extracted.strip()
    return extracted if len(extracted) >= 2 else query


def _receipt(row: Row) -> dict[str, Any]:
    receipt = row.get("receipts") or {}
    # PostgREST returns a list for one-to-many embeds.
    if isinstance(receipt, list):
        receipt = receipt[0] if receipt else {}
    return receipt


def _to_result(row: Row, similarity: float, match_type: str) -> UnifiedSearchResult:
    receipt = _receipt(row)
    merchant = receipt.get("merchant") or "Unknown"
    description = row.get("description") or "Unknown"
    line_item_id = str(row.get("id"))
    day = receipt.get("date")
    return UnifiedSearchResult(
        id=f"line-item-{line_item_id}",
        source_type=SourceType.LINE_ITEM,
        source_id=line_item_id,
        content_type="line_item",
        title=f"{description} - {merchant}",
        description=description,
        similarity=similarity,
        metadata={
            "merchant": merchant,
            "amount": row.get("amount"),
            "line_item_price": row.get("amount"),
            "currency": receipt.get("currency") or config.default_currency,
            "date": day,
            "line_item_id": line_item_id,
            "receipt_id": row.get("receipt_id"),
            "description": description,
            "match_type": match_type,
            "boost": LINE_ITEM_EXACT_BOOST if match_type == "exact" else 1.0,
        },
        access_level=AccessLevel.USER,
        created_at=day,
        content_text=description,
    )


class LineItemSearch:
    def __init__(self, store: DataStore):
        self._store = store

    async def _exact(self, ctx: PipelineContext, term: str, limit: int) -> list[UnifiedSearchResult]:
        filters = ctx.active_filters
        rows = await self._store.line_items_matching(
            ctx.user_id,
            term,
            limit,
            date_range=filters.date_range,
            amount_range=filters.amount_range,
        )
        return [_to_result(row, 1.0, "exact") for row in rows]

    async def _semantic(
        self,
        ctx: PipelineContext,
        embedding: list[float],
        limit: int,
        threshold: float,
        exclude: set[str],
    ) -> list[UnifiedSearchResult]:
        params = HybridSearchParams(
            query_embedding=embedding,
            query_text=ctx.request.query,
            user_filter=ctx.user_id,
            source_types=[SourceType.RECEIPT.value],
            content_types=["line_item"],
            similarity_threshold=threshold,
            match_count=limit + len(exclude),
            team_filter=ctx.team_id,
        )
        rows = await self._store.hybrid_search(params)
        scores: dict[str, float] = {}
        for row in rows:
            line_item_id = (row.get("metadata") or {}).get("line_item_id")
            if line_item_id is None or str(line_item_id) in exclude:
                continue
            score = row_score(row)
            if score < threshold:
                continue
            scores[str(line_item_id)] = max(score, scores.get(str(line_item_id), 0.0))
        ranked = sorted(scores, key=lambda k: -scores[k])[:limit]
        if not ranked:
            return []
        details = {str(r.get("id")): r for r in await self._store.line_items_by_ids(ranked)}
        return [
            _to_result(details[item_id], scores[item_id] or LINE_ITEM_DEFAULT_SIMILARITY, "semantic")
            for item_id in ranked
            if item_id in details
        ]

    async def run(self, ctx: PipelineContext, embedding: list[float]) -> StrategyOutcome:
        query = ctx.request.query
        limit = ctx.request.limit
        term = extract_item_name(query)
        threshold = adaptive_threshold(query)

        exact = await self._exact(ctx, term, math.ceil(limit * LINE_ITEM_EXACT_SHARE))
        remaining = limit - len(exact)
        semantic: list[UnifiedSearchResult] = []
        if remaining > 0 and not is_specific_product(query):
            exclude = {r.source_id for r in exact}
            semantic = await self._semantic(ctx, embedding, remaining, threshold, exclude)

        # Exact matches first, then by similarity.
        combined = sorted(
            exact + semantic,
            key=lambda r: (r.metadata.get("match_type") != "exact", -r.similarity),
        )[:limit]
        ctx.metadata.record_source(SearchMethod.LINE_ITEM)
        logger.info(
            "Line-item search %r: %d exact, %d semantic (threshold %.2f)",
            term, len(exact), len(semantic), threshold,
        )
        return StrategyOutcome(
            results=combined,
            search_method=SearchMethod.LINE_ITEM,
            notes={"exact_matches": len(exact), "semantic_matches": len(semantic), "threshold": threshold},
        )
