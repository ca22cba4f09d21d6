"""Stage 3: pick a retrieval branch and run it with its own fallbacks.

Precedence: financial analysis intent, line-item query, temporal routing,
trivial single-token query, then general semantic search. Each branch
degrades locally (wider date windows, date-only substitutes, the legacy
procedure) before anything reaches the orchestrator.
"""

import logging

from src.contracts.rag_search_v1 import (
    DateRange,
    QueryIntent,
    RoutingStrategy,
    SourceType,
    TemporalIntent,
    UnifiedSearchResult,
)
from src.core.config import config
from src.observability import traceable
from src.orchestrators.rag.constants import (
    CANDIDATE_MULTIPLIER,
    DEFAULT_TRIGRAM_THRESHOLD,
    EFFECTIVE_LIMIT_PADDING,
    LARGE_RANGE_MAX_DAYS,
    LARGE_RANGE_MAX_IDS,
    MIN_CANDIDATE_COUNT,
    PROCESSING_NOTE,
    SEMANTIC_WEIGHTS,
    SIMPLE_SEARCH_SIMILARITY,
    TEMPORAL_CANDIDATE_MULTIPLIER,
    TEMPORAL_SIMILARITY_THRESHOLD,
    TEMPORAL_TRIGRAM_THRESHOLD,
    TEMPORAL_WEIGHTS,
    QueryCategory,
    SearchMethod,
)
from src.orchestrators.rag.context import PipelineContext, with_timeout
from src.orchestrators.rag.errors import AuthError, RetrievalError
from src.orchestrators.rag.fallback import expand_date_range
from src.orchestrators.rag.financial_analysis import FinancialAnalyzer
from src.orchestrators.rag.line_items import LineItemSearch
from src.orchestrators.rag.preprocessor import is_trivial_query
from src.orchestrators.rag.query_classifier import KeywordQueryClassifier, QueryClassifier
from src.orchestrators.rag.store import DataStore, HybridSearchParams, Row
from src.orchestrators.rag.strategies import NamedStrategy, StrategyOutcome, run_strategy_chain
from src.orchestrators.rag.transform import (
    access_level_for,
    dedupe_results,
    dedupe_rows,
    hybrid_temporal_row_to_result,
    receipt_row_to_result,
    row_source_type,
    sort_by_similarity,
    transform_search_rows,
)

logger = logging.getLogger(__name__)

DATE_MATCH = {"match_kind": "date_filter"}


def compute_effective_limit(limit: int, receipts_in_range: int | None) -> int:
    """Grow the page to cover every receipt found in the requested range."""
    if receipts_in_range and receipts_in_range > limit:
        return max(receipts_in_range + EFFECTIVE_LIMIT_PADDING, limit)
    return limit


def validate_temporal_prerequisites(
    strategy: RoutingStrategy, date_range: DateRange | None, has_amount: bool
) -> str | None:
    """Return a problem description, or None when the temporal branch can run."""
    if strategy == RoutingStrategy.SEMANTIC_ONLY and has_amount:
        return None
    if date_range is None:
        return "Date range is required for temporal search but was not provided"
    if date_range.start > date_range.end:
        return "Start date cannot be after end date in temporal search"
    return None


def is_large_range(date_range: DateRange, id_count: int) -> bool:
    return date_range.days > LARGE_RANGE_MAX_DAYS or id_count > LARGE_RANGE_MAX_IDS


class HybridSearchRouter:
    def __init__(
        self,
        store: DataStore,
        *,
        classifier: QueryClassifier | None = None,
        analyzer: FinancialAnalyzer | None = None,
        line_items: LineItemSearch | None = None,
        semantic_timeout_seconds: float | None = None,
        temporal_timeout_seconds: float | None = None,
    ):
        self.store = store
        self.classifier = classifier or KeywordQueryClassifier()
        self.analyzer = analyzer or FinancialAnalyzer(store)
        self.line_items = line_items or LineItemSearch(store)
        self.semantic_timeout = semantic_timeout_seconds or config.hybrid_search_timeout_seconds
        self.temporal_timeout = temporal_timeout_seconds or config.temporal_search_timeout_seconds

    # -- entry point -------------------------------------------------------

    @traceable(name="rag_retrieve", run_type="retriever")
    async def search(self, ctx: PipelineContext, embedding: list[float]) -> StrategyOutcome:
        if not ctx.user_id:
            raise AuthError("User context missing for retrieval")

        preprocess = ctx.preprocess
        if preprocess is not None and preprocess.intent == QueryIntent.FINANCIAL_ANALYSIS:
            return await self.analyzer.run(ctx)

        query = ctx.request.query
        if self.classifier.classify(query) == QueryCategory.LINE_ITEM:
            return await self.line_items.run(ctx, embedding)

        intent = self._temporal_intent(ctx)
        if intent is not None and intent.is_temporal_query:
            outcome = await self._temporal(ctx, embedding, intent)
            if outcome is not None:
                return outcome

        if is_trivial_query(query):
            return await self.simple_search(ctx)

        return await self.semantic_search(ctx, embedding)

    def _temporal_intent(self, ctx: PipelineContext) -> TemporalIntent | None:
        if ctx.temporal is not None:
            return ctx.temporal.temporal_intent
        if ctx.preprocess is not None:
            return ctx.preprocess.temporal_routing
        return None

    async def _temporal(
        self, ctx: PipelineContext, embedding: list[float], intent: TemporalIntent
    ) -> StrategyOutcome | None:
        filters = ctx.active_filters
        problem = validate_temporal_prerequisites(
            intent.routing_strategy, filters.date_range, filters.amount_range is not None
        )
        if problem:
            logger.warning("Temporal routing skipped: %s", problem)
            return None
        match intent.routing_strategy:
            case RoutingStrategy.DATE_FILTER_ONLY:
                return await self.date_filter_only(ctx)
            case RoutingStrategy.HYBRID_TEMPORAL_SEMANTIC:
                return await self.hybrid_temporal(ctx, embedding, intent)
            case _:
                return None

    # -- date filter -------------------------------------------------------

    async def date_filter_only(self, ctx: PipelineContext) -> StrategyOutcome:
        """Every receipt dated inside the range, newest first, similarity 1.0."""
        date_range = ctx.active_filters.date_range
        if date_range is None:
            raise RetrievalError("Date range required for date filter only search")
        limit = ctx.request.offset + compute_effective_limit(
            ctx.request.limit, ctx.metadata.total_receipts_in_range
        )
        rows = await with_timeout(
            self.store.receipts_in_range(ctx.user_id, date_range, limit),
            self.temporal_timeout,
            "Date filter query",
        )
        results = [receipt_row_to_result(row, extra_metadata=DATE_MATCH) for row in rows]
        if not results:
            logger.info("No receipts between %s and %s; widening", date_range.start, date_range.end)
            return await expand_date_range(ctx, self.store, date_range)
        ctx.metadata.record_source("date_filter_receipts")
        return StrategyOutcome(
            results=results,
            search_method=SearchMethod.DATE_FILTER_ONLY,
            notes={"date_range": date_range},
        )

    # -- hybrid temporal ---------------------------------------------------

    async def hybrid_temporal(
        self, ctx: PipelineContext, embedding: list[float], intent: TemporalIntent
    ) -> StrategyOutcome:
        date_range = ctx.active_filters.date_range
        if date_range is None:
            raise RetrievalError("Hybrid temporal search needs a date range")
        receipt_ids = await with_timeout(
            self.store.receipt_ids_in_range(ctx.user_id, date_range),
            self.temporal_timeout,
            "Receipt id lookup",
        )
        ctx.metadata.total_receipts_in_range = len(receipt_ids)
        ctx.metadata.receipt_ids_in_range = len(receipt_ids)

        if is_large_range(date_range, len(receipt_ids)):
            outcome = await self.date_filter_only(ctx)
            if outcome.search_method == SearchMethod.DATE_FILTER_ONLY:
                outcome.search_method = SearchMethod.DATE_FILTER_LARGE_RANGE
            outcome.notes["days"] = date_range.days
            return outcome

        if not receipt_ids:
            return await self.date_filter_only(ctx)

        params = HybridSearchParams(
            query_embedding=embedding,
            query_text=" ".join(intent.semantic_terms) or ctx.request.query,
            user_filter=ctx.user_id,
            source_types=[SourceType.RECEIPT.value],
            content_types=ctx.request.content_types,
            similarity_threshold=TEMPORAL_SIMILARITY_THRESHOLD,
            trigram_threshold=TEMPORAL_TRIGRAM_THRESHOLD,
            weights=TEMPORAL_WEIGHTS,
            match_count=max(MIN_CANDIDATE_COUNT, ctx.request.limit * TEMPORAL_CANDIDATE_MULTIPLIER),
            team_filter=ctx.team_id,
            language_filter=ctx.active_filters.language,
            receipt_ids_filter=receipt_ids,
        )
        try:
            rows = await with_timeout(
                self.store.hybrid_search(params), self.temporal_timeout, "Hybrid temporal search"
            )
        except (RetrievalError, TimeoutError) as e:
            logger.warning("Hybrid temporal search failed, using date filter: %s", e)
            ctx.metadata.record_fallback("date_filter_only_from_hybrid_error")
            outcome = await self.date_filter_only(ctx)
            if outcome.search_method == SearchMethod.DATE_FILTER_ONLY:
                outcome.search_method = SearchMethod.HYBRID_TEMPORAL_ERROR_FALLBACK
            outcome.notes["original_search_method"] = str(SearchMethod.HYBRID_TEMPORAL)
            return outcome

        in_range = set(receipt_ids)
        matched = [
            r for r in rows
            if r.get("source_type") == SourceType.RECEIPT and str(r.get("source_id")) in in_range
        ]
        if not matched:
            # Receipts exist in range but have no embeddings yet.
            outcome = await self.date_filter_only(ctx)
            if outcome.results and outcome.search_method == SearchMethod.DATE_FILTER_ONLY:
                outcome.search_method = SearchMethod.HYBRID_TEMPORAL_DATE_FALLBACK
                ctx.metadata.user_message = PROCESSING_NOTE.format(count=len(outcome.results))
                ctx.metadata.record_fallback("hybrid_temporal_no_embeddings")
            return outcome

        results = sort_by_similarity(
            [hybrid_temporal_row_to_result(row) for row in dedupe_rows(matched)]
        )
        ctx.metadata.record_source(SearchMethod.HYBRID_TEMPORAL)
        return StrategyOutcome(
            results=results,
            search_method=SearchMethod.HYBRID_TEMPORAL,
            notes={"receipt_ids_in_range": len(receipt_ids), "semantic_rows": len(rows)},
        )

    # -- simple and semantic -----------------------------------------------

    async def simple_search(self, ctx: PipelineContext) -> StrategyOutcome:
        rows = await self.store.embeddings_text_search(ctx.user_id, ctx.request.query, ctx.request.limit)
        converted = (self._simple_row(row) for row in rows)
        results = dedupe_results([r for r in converted if r is not None])
        ctx.metadata.record_source(SearchMethod.SIMPLE)
        return StrategyOutcome(results=sort_by_similarity(results), search_method=SearchMethod.SIMPLE)

    @staticmethod
    def _simple_row(row: Row) -> UnifiedSearchResult | None:
        meta = row.get("metadata") or {}
        source_type = row_source_type(row) if row.get("source_type") else SourceType.RECEIPT
        if source_type is None:
            logger.debug("Skipping row with unknown source type %r", row.get("source_type"))
            return None
        text = row.get("content_text") or ""
        return UnifiedSearchResult(
            id=str(row.get("id")),
            source_type=source_type,
            source_id=str(row.get("source_id")),
            content_type=str(row.get("content_type") or "full_text"),
            title=meta.get("merchant") or "Unknown",
            description=text[:200],
            similarity=SIMPLE_SEARCH_SIMILARITY,
            metadata=dict(meta),
            access_level=access_level_for(source_type),
            created_at=row.get("created_at"),
            content_text=text,
        )

    def _semantic_params(self, ctx: PipelineContext, embedding: list[float]) -> HybridSearchParams:
        request = ctx.request
        filters = ctx.active_filters
        amount = filters.amount_range
        # Amount filtering dominates; similarity thresholds would drop valid matches.
        monetary = amount is not None
        return HybridSearchParams(
            query_embedding=embedding,
            query_text=request.query,
            user_filter=ctx.user_id,
            source_types=[str(s) for s in request.sources],
            content_types=request.content_types,
            similarity_threshold=0.0 if monetary else request.similarity_threshold,
            trigram_threshold=0.0 if monetary else DEFAULT_TRIGRAM_THRESHOLD,
            weights=SEMANTIC_WEIGHTS,
            match_count=max(MIN_CANDIDATE_COUNT, request.limit * CANDIDATE_MULTIPLIER),
            team_filter=ctx.team_id,
            language_filter=filters.language,
            amount_min=amount.min if amount else None,
            amount_max=amount.max if amount else None,
            amount_currency=amount.currency if amount else None,
            date_start=filters.date_range.start if filters.date_range else None,
            date_end=filters.date_range.end if filters.date_range else None,
        )

    async def semantic_search(self, ctx: PipelineContext, embedding: list[float]) -> StrategyOutcome:
        """Enhanced hybrid procedure; the legacy procedure only when it errors or times out."""
        params = self._semantic_params(ctx, embedding)

        async def enhanced(c: PipelineContext) -> StrategyOutcome:
            rows = await with_timeout(
                self.store.hybrid_search(params), self.semantic_timeout, "Enhanced hybrid search"
            )
            c.metadata.record_source(SearchMethod.ENHANCED_HYBRID)
            return StrategyOutcome(
                results=await transform_search_rows(self.store, rows),
                search_method=SearchMethod.ENHANCED_HYBRID,
            )

        async def legacy(c: PipelineContext) -> StrategyOutcome:
            c.metadata.record_fallback("regular_unified_search")
            rows = await self.store.unified_search(params)
            c.metadata.record_source(SearchMethod.LEGACY_UNIFIED)
            return StrategyOutcome(
                results=await transform_search_rows(self.store, rows),
                search_method=SearchMethod.LEGACY_UNIFIED,
            )

        chain = await run_strategy_chain(
            ctx,
            [
                NamedStrategy(SearchMethod.ENHANCED_HYBRID, enhanced, accept_empty=True),
                NamedStrategy(SearchMethod.LEGACY_UNIFIED, legacy, accept_empty=True),
            ],
        )
        if chain.outcome is None:
            raise RetrievalError("Semantic search produced no outcome")
        return chain.outcome
