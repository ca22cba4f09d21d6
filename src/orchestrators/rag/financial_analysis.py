"""Aggregation queries for financial-analysis intents.

Keyword routing picks one stored aggregation; its rows are wrapped as
`financial_analysis` results ranked by position so downstream stages can
treat them like any other candidate.
"""

import hashlib
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from src.contracts.rag_search_v1 import AccessLevel, SourceType, UnifiedSearchResult
from src.core.config import config
from src.orchestrators.rag.cache import Cache
from src.orchestrators.rag.constants import (
    ANALYSIS_KEYWORDS,
    ANALYSIS_RANK_STEP,
    MERCHANT_ANALYSIS_LIMIT,
    MONTHLY_TRENDS_MONTHS_BACK,
    AnalysisType,
    SearchMethod,
)
from src.orchestrators.rag.context import PipelineContext
from src.orchestrators.rag.store import DataStore, Row
from src.orchestrators.rag.strategies import StrategyOutcome

logger = logging.getLogger(__name__)

_KEYWORD_PATTERNS = tuple(
    (analysis, tuple(re.compile(r"\b" + re.escape(k)) for k in keywords))
    for analysis, keywords in ANALYSIS_KEYWORDS
)


def detect_analysis_type(query: str) -> AnalysisType:
    text = query.lower()
    for analysis, patterns in _KEYWORD_PATTERNS:
        if any(p.search(text) for p in patterns):
            return analysis
    return AnalysisType.SPENDING_BY_CATEGORY


@dataclass(frozen=True)
class _Analysis:
    procedure: str
    title: Callable[[Row, str], str]
    description: Callable[[Row, str], str]
    uses_dates: bool = True
    cacheable: bool = False


ANALYSES: dict[AnalysisType, _Analysis] = {
    AnalysisType.SPENDING_BY_CATEGORY: _Analysis(
        procedure="get_spending_by_category",
        title=lambda r, cur: f"{r.get('category')} - {r.get('total_amount')} {cur}",
        description=lambda r, cur: (
            f"{r.get('transaction_count')} transactions, avg {r.get('average_amount')} {cur} "
            f"({r.get('percentage_of_total')}% of total)"
        ),
        cacheable=True,
    ),
    AnalysisType.MONTHLY_TRENDS: _Analysis(
        procedure="get_monthly_spending_trends",
        title=lambda r, cur: f"{r.get('month_name')} {r.get('year')} - {r.get('total_amount')} {cur}",
        description=lambda r, cur: (
            f"{r.get('transaction_count')} transactions, top category: {r.get('top_category')}, "
            f"top merchant: {r.get('top_merchant')}"
        ),
        uses_dates=False,
        cacheable=True,
    ),
    AnalysisType.MERCHANT_ANALYSIS: _Analysis(
        procedure="get_merchant_analysis",
        title=lambda r, cur: f"{r.get('merchant')} - {r.get('total_amount')} {cur}",
        description=lambda r, cur: (
            f"{r.get('transaction_count')} visits, avg {r.get('average_amount')} {cur}, "
            f"frequency: {r.get('frequency_score')}/month"
        ),
    ),
    AnalysisType.ANOMALIES: _Analysis(
        procedure="get_spending_anomalies",
        title=lambda r, cur: f"{r.get('merchant')} - {r.get('amount')} {cur} ({r.get('anomaly_type')})",
        description=lambda r, cur: f"{r.get('description')} on {r.get('date')}",
    ),
    AnalysisType.TIME_PATTERNS: _Analysis(
        procedure="get_time_based_patterns",
        title=lambda r, cur: f"{r.get('period_value')} - {r.get('total_amount')} {cur}",
        description=lambda r, cur: (
            f"{r.get('transaction_count')} transactions, avg {r.get('average_amount')} {cur}, "
            f"top: {r.get('top_category')}"
        ),
    ),
}


def analysis_params(ctx: PipelineContext, analysis_type: AnalysisType, currency: str) -> dict[str, Any]:
    params: dict[str, Any] = {"user_filter": ctx.user_id, "currency_filter": currency}
    if ANALYSES[analysis_type].uses_dates:
        date_range = ctx.active_filters.date_range
        params["start_date"] = date_range.start.isoformat() if date_range else None
        params["end_date"] = date_range.end.isoformat() if date_range else None
    if analysis_type == AnalysisType.MONTHLY_TRENDS:
        params["months_back"] = MONTHLY_TRENDS_MONTHS_BACK
    if analysis_type == AnalysisType.MERCHANT_ANALYSIS:
        params["limit_results"] = MERCHANT_ANALYSIS_LIMIT
    return params


def analysis_cache_key(procedure: str, params: dict[str, Any]) -> str:
    digest = hashlib.sha256(json.dumps(params, sort_keys=True, default=str).encode()).hexdigest()
    return f"analysis:{procedure}:{digest}"


def analysis_rows_to_results(
    rows: list[Row], analysis_type: AnalysisType, currency: str
) -> list[UnifiedSearchResult]:
    shape = ANALYSES[analysis_type]
    created = datetime.now(timezone.utc).isoformat()
    return [
        UnifiedSearchResult(
            id=f"analysis-{analysis_type}-{i}",
            source_type=SourceType.FINANCIAL_ANALYSIS,
            source_id=f"{analysis_type}-{i}",
            content_type="analysis",
            title=shape.title(row, currency),
            description=shape.description(row, currency),
            similarity=1.0 - i * ANALYSIS_RANK_STEP,
            metadata={**row, "analysis_type": str(analysis_type)},
            access_level=AccessLevel.USER,
            created_at=created,
        )
        for i, row in enumerate(rows)
    ]


class FinancialAnalyzer:
    def __init__(self, store: DataStore, cache: Cache | None = None, cache_ttl_seconds: float | None = None):
        self._store = store
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds or config.preprocess_cache_ttl_seconds

    async def _rows(self, analysis: _Analysis, params: dict[str, Any]) -> list[Row]:
        key = analysis_cache_key(analysis.procedure, params)
        if analysis.cacheable and self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("Analysis cache hit for %s", analysis.procedure)
                return list(cached)
        rows = await self._store.call_procedure(analysis.procedure, params)
        if analysis.cacheable and self._cache is not None:
            await self._cache.set(key, rows, ttl=self._cache_ttl)
        return rows

    async def run(self, ctx: PipelineContext) -> StrategyOutcome:
        analysis_type = detect_analysis_type(ctx.request.query)
        currency = ctx.identity.currency or config.default_currency
        params = analysis_params(ctx, analysis_type, currency)
        rows = await self._rows(ANALYSES[analysis_type], params)
        logger.info("Financial analysis %s returned %d rows", analysis_type, len(rows))
        ctx.metadata.record_source(ANALYSES[analysis_type].procedure)
        return StrategyOutcome(
            results=analysis_rows_to_results(rows, analysis_type, currency),
            search_method=SearchMethod.FINANCIAL_ANALYSIS,
            notes={"analysis_type": str(analysis_type)},
        )
