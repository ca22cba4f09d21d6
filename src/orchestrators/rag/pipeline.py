"""Six-stage RAG search pipeline.

    preprocess -> embed -> retrieve -> rerank -> compile -> finalize

Each stage returns a StageResult. A failed stage, or a budget checkpoint
crossed before a stage starts, aborts the run and hands the request to the
legacy text search exactly once; only when that also fails does the caller
see a failed response. Identity problems are never retried.
"""

import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from src.contracts.rag_search_v1 import (
    Filters,
    Identity,
    SearchRequest,
    SearchResponse,
    SmartSuggestions,
    UnifiedSearchResult,
)
from src.core.config import config
from src.core.logger import logger
from src.observability import stage_trace
from src.orchestrators.rag.constants import (
    CHECKPOINT_EMBED,
    CHECKPOINT_FAIL_FAST,
    CHECKPOINT_RERANK,
    CHECKPOINT_RETRIEVE,
    FALLBACK_RERANK_SCORE,
    SIMPLE_QUERY_RERANK_MAX,
    BudgetCheckpoint,
    PipelineStage,
    SearchMethod,
)
from src.orchestrators.rag.context import PipelineContext, StageResult, with_timeout
from src.orchestrators.rag.embeddings import EmbeddingGenerator
from src.orchestrators.rag.errors import (
    AuthError,
    PipelineError,
    PipelineTimeoutError,
)
from src.orchestrators.rag.fallback import expand_date_range, legacy_text_search
from src.orchestrators.rag.filters import apply_additional_filters, filter_by_date, result_date
from src.orchestrators.rag.preprocessor import PreprocessResult, QueryPreprocessor, is_trivial_query
from src.orchestrators.rag.reranker import ResultReranker
from src.orchestrators.rag.router import HybridSearchRouter, compute_effective_limit
from src.orchestrators.rag.store import DataStore
from src.orchestrators.rag.strategies import StrategyOutcome
from src.orchestrators.rag.suggestions import build_smart_suggestions
from src.orchestrators.rag.temporal_parser import ParsedTemporalQuery, parse_temporal_query
from src.orchestrators.rag.validation import validate_request

FALLBACK_MODEL = "fallback-search"

T = TypeVar("T")


def merge_filters(filters: Filters, parsed: ParsedTemporalQuery) -> Filters:
    """Fill date and amount ranges the caller left unset from what the parser found."""
    update: dict[str, Any] = {}
    if filters.date_range is None and parsed.date_range is not None:
        update["date_range"] = parsed.date_range
    if filters.amount_range is None and parsed.amount_range is not None:
        update["amount_range"] = parsed.amount_range
    return filters.model_copy(update=update) if update else filters


def _aggregate(results: list[UnifiedSearchResult], request: SearchRequest) -> list[UnifiedSearchResult]:
    match request.aggregation_mode:
        case "date":
            dated = [r for r in results if result_date(r) is not None]
            undated = [r for r in results if result_date(r) is None]
            return sorted(dated, key=result_date, reverse=True) + undated
        case "source":
            order = {s: i for i, s in enumerate(request.sources)}
            return sorted(results, key=lambda r: order.get(r.source_type, len(order)))
        case _:
            return results


class RAGPipeline:
    def __init__(
        self,
        preprocessor: QueryPreprocessor,
        embedder: EmbeddingGenerator,
        router: HybridSearchRouter,
        reranker: ResultReranker,
        store: DataStore,
        *,
        budget_seconds: float | None = None,
        rerank_timeout_seconds: float | None = None,
        resources: list[Any] | None = None,
    ):
        self.preprocessor = preprocessor
        self.embedder = embedder
        self.router = router
        self.reranker = reranker
        self.store = store
        self.budget_seconds = budget_seconds or config.pipeline_budget_seconds
        self.rerank_timeout = rerank_timeout_seconds or config.rerank_timeout_seconds
        # HTTP clients owned by this pipeline; closed by close().
        self._resources = list(resources or [])

    async def close(self):
        for resource in self._resources:
            await resource.close()
        self._resources = []

    # -- entry point -------------------------------------------------------

    async def execute_search(
        self,
        request: SearchRequest | dict[str, Any],
        identity: Identity,
        *,
        history: list[str] | None = None,
        profile: dict[str, Any] | None = None,
        started: float | None = None,
        now: datetime | None = None,
    ) -> SearchResponse:
        """Run one search.

        Raises ValidationError for a malformed request and AuthError when the
        identity carries no user; every other failure ends in a response.
        `started` is the caller's monotonic start time when budget was already
        spent before the pipeline was entered.
        """
        validated = validate_request(request)
        if not identity.user_id:
            raise AuthError("User authentication required for search execution")

        ctx = PipelineContext.create(validated, identity, self.budget_seconds, started=started, now=now)
        logger.request_started(ctx.request_id, validated.query, identity.user_id)
        response: SearchResponse | None = None
        try:
            response = await self._run(ctx, history, profile)
            return response
        finally:
            ctx.metadata.search_duration_ms = ctx.budget.elapsed() * 1000
            if response is not None:
                response.metadata.search_duration_ms = ctx.metadata.search_duration_ms
            logger.request_finished(
                response.total_results if response else 0,
                ctx.budget.elapsed(),
                bool(response and response.success),
            )

    async def _run(
        self,
        ctx: PipelineContext,
        history: list[str] | None,
        profile: dict[str, Any] | None,
    ) -> SearchResponse:
        if self._over_budget(ctx, CHECKPOINT_FAIL_FAST):
            return await self._fallback(ctx, self._budget_reason(ctx, CHECKPOINT_FAIL_FAST))

        ctx.temporal = parse_temporal_query(
            ctx.request.query, now=ctx.now, default_currency=ctx.identity.currency
        )
        ctx.filters = merge_filters(ctx.request.filters, ctx.temporal)
        ctx.metadata.temporal_routing = ctx.temporal.temporal_intent
        ctx.metadata.routing_strategy = ctx.temporal.routing_strategy

        preprocess = await self._stage(
            ctx, PipelineStage.PREPROCESS, lambda c: self._preprocess(c, history, profile)
        )
        if not preprocess.success:
            return await self._fallback(ctx, f"preprocess: {preprocess.error}")
        ctx.preprocess = preprocess.data

        if self._over_budget(ctx, CHECKPOINT_EMBED):
            return await self._fallback(ctx, self._budget_reason(ctx, CHECKPOINT_EMBED))
        embedding = await self._stage(ctx, PipelineStage.EMBED, self._embed)
        if not embedding.success:
            return await self._fallback(ctx, f"embed: {embedding.error}")

        if self._over_budget(ctx, CHECKPOINT_RETRIEVE):
            return await self._fallback(ctx, self._budget_reason(ctx, CHECKPOINT_RETRIEVE))
        retrieved = await self._stage(
            ctx, PipelineStage.RETRIEVE, lambda c: self._retrieve(c, embedding.data or [])
        )
        if not retrieved.success:
            return await self._fallback(ctx, f"retrieve: {retrieved.error}")

        candidates = retrieved.data or []
        reranked = await self._stage(ctx, PipelineStage.RERANK, lambda c: self._rerank(c, candidates))
        ranked = reranked.data if reranked.success and reranked.data is not None else candidates
        compiled = await self._stage(ctx, PipelineStage.COMPILE, lambda c: self._compile(c, ranked))
        if not compiled.success:
            return await self._fallback(ctx, f"compile: {compiled.error}")
        results, suggestions = compiled.data or ([], None)

        final = await self._stage(ctx, PipelineStage.FINALIZE, lambda c: self._finalize(c, results))
        return SearchResponse(
            success=True,
            results=final.data or [],
            total_results=len(final.data or []),
            metadata=ctx.metadata,
            smart_suggestions=suggestions,
        )

    # -- stage driver ------------------------------------------------------

    async def _stage(
        self,
        ctx: PipelineContext,
        stage: PipelineStage,
        run: Callable[[PipelineContext], Awaitable[T]],
    ) -> StageResult[T]:
        logger.stage_started(stage)
        started = time.monotonic()
        async with stage_trace(stage, ctx.request_id, query=ctx.request.query) as trace_run:
            try:
                data = await run(ctx)
            except AuthError as e:
                logger.stage_finished(stage, False, error_reason=str(e))
                raise
            except (PipelineError, TimeoutError) as e:
                elapsed_ms = (time.monotonic() - started) * 1000
                ctx.metadata.stage_timings_ms[stage] = round(elapsed_ms, 1)
                logger.stage_finished(stage, False, error_reason=str(e))
                trace_run.end(outputs={"success": False, "error": str(e)})
                return StageResult(success=False, error=str(e), processing_ms=elapsed_ms)
            except Exception as e:
                elapsed_ms = (time.monotonic() - started) * 1000
                ctx.metadata.stage_timings_ms[stage] = round(elapsed_ms, 1)
                logger.error(f"Stage {stage} raised unexpectedly", exception=e)
                logger.stage_finished(stage, False, error_reason=repr(e))
                trace_run.end(outputs={"success": False, "error": repr(e)})
                return StageResult(success=False, error=repr(e), processing_ms=elapsed_ms)
            elapsed_ms = (time.monotonic() - started) * 1000
            ctx.metadata.stage_timings_ms[stage] = round(elapsed_ms, 1)
            logger.stage_finished(stage, True)
            trace_run.end(outputs={"success": True})
            return StageResult(success=True, data=data, processing_ms=elapsed_ms)

    def _over_budget(self, ctx: PipelineContext, checkpoint: BudgetCheckpoint) -> bool:
        return ctx.budget.exceeded(checkpoint)

    def _budget_reason(self, ctx: PipelineContext, checkpoint: BudgetCheckpoint) -> str:
        error = PipelineTimeoutError(checkpoint.stage, ctx.budget.elapsed(), ctx.budget.total_seconds)
        ctx.metadata.record_fallback(f"budget_{checkpoint.stage}")
        return str(error)

    # -- stages ------------------------------------------------------------

    async def _preprocess(
        self,
        ctx: PipelineContext,
        history: list[str] | None,
        profile: dict[str, Any] | None,
    ) -> PreprocessResult:
        result = await self.preprocessor.preprocess(
            ctx.request.query,
            user_id=ctx.user_id,
            history=history,
            profile=profile,
            temporal=ctx.temporal,
        )
        ctx.metadata.llm_preprocessing = {
            "expanded_query": result.expanded_query,
            "intent": str(result.intent),
            "confidence": result.confidence,
            "query_type": result.query_type,
            "source": result.source,
            "processing_ms": round(result.processing_ms, 1),
        }
        return result

    async def _embed(self, ctx: PipelineContext) -> list[float]:
        text = ctx.preprocess.expanded_query if ctx.preprocess else ctx.request.query
        # Must answer before the retrieve checkpoint would be crossed.
        limit = ctx.budget.seconds_until(CHECKPOINT_RETRIEVE)
        return await self.embedder.generate(text or ctx.request.query, timeout_seconds=limit)

    async def _retrieve(self, ctx: PipelineContext, embedding: list[float]) -> list[UnifiedSearchResult]:
        outcome: StrategyOutcome = await self.router.search(ctx, embedding)
        ctx.metadata.search_method = outcome.search_method
        ctx.effective_limit = compute_effective_limit(
            ctx.request.limit,
            ctx.metadata.total_receipts_in_range or ctx.metadata.receipt_ids_in_range,
        )
        logger.info(
            f"Retrieved {len(outcome.results)} candidate(s) via {outcome.search_method} "
            f"(effective limit {ctx.effective_limit})"
        )
        return outcome.results

    async def _rerank(self, ctx: PipelineContext, results: list[UnifiedSearchResult]) -> list[UnifiedSearchResult]:
        meta = ctx.metadata
        meta.rerank_candidates = len(results)
        cap = ctx.request.offset + ctx.effective_limit

        skip: tuple[str, str] | None = None
        if ctx.budget.exceeded(CHECKPOINT_RERANK):
            skip = ("timeout-skip", "medium")
        elif is_trivial_query(ctx.request.query) and len(results) <= SIMPLE_QUERY_RERANK_MAX:
            skip = ("simple-query-skip", "medium")
        elif len(results) <= 1:
            skip = ("none", "low")
        if skip is not None:
            meta.rerank_applied = False
            meta.rerank_model_used, meta.rerank_confidence_level = skip
            logger.info(f"Re-ranking skipped ({skip[0]})")
            return results[:cap]

        intent = str(ctx.preprocess.intent) if ctx.preprocess else "conversational"
        hints = ctx.preprocess.contextual_hints if ctx.preprocess else None
        try:
            reranked = await with_timeout(
                self.reranker.rerank(
                    ctx.request.query, results, intent=intent, hints=hints, today=ctx.today
                ),
                self.rerank_timeout,
                "Re-ranking",
            )
        except Exception as e:
            # Any re-rank failure keeps retrieval order.
            logger.fallback_used("rerank_original_order", str(e) or repr(e))
            meta.rerank_applied = False
            meta.rerank_model_used = "fallback-error"
            meta.rerank_confidence_level = "low"
            meta.rerank_score = FALLBACK_RERANK_SCORE
            return results[:cap]

        meta.rerank_applied = True
        meta.rerank_model_used = reranked.model_used
        meta.rerank_confidence_level = reranked.confidence_level
        meta.rerank_score = round(reranked.confidence, 4)
        return reranked.results[:cap]

    async def _compile(
        self, ctx: PipelineContext, results: list[UnifiedSearchResult]
    ) -> tuple[list[UnifiedSearchResult], SmartSuggestions | None]:
        filters = ctx.active_filters
        if ctx.metadata.is_fallback_result:
            # Already drawn from the widened window; the original range would drop them all.
            filters = filters.model_copy(update={"date_range": None})
        filtered = apply_additional_filters(results, filters)
        if filtered or not results or filters.date_range is None:
            return filtered, None

        date_range = filters.date_range
        suggestions = None
        if not filter_by_date(results, date_range):
            suggestions = build_smart_suggestions(results, date_range)

        logger.info("Filters emptied %d candidate(s); widening the date range", len(results))
        outcome = await expand_date_range(ctx, self.store, date_range)
        widened = apply_additional_filters(
            outcome.results, filters.model_copy(update={"date_range": None})
        )
        ctx.metadata.search_method = outcome.search_method
        if not widened and suggestions is not None:
            ctx.metadata.user_message = suggestions.enhanced_message
        return widened, suggestions

    async def _finalize(self, ctx: PipelineContext, results: list[UnifiedSearchResult]) -> list[UnifiedSearchResult]:
        ordered = _aggregate(results, ctx.request)
        offset = ctx.request.offset
        final = ordered[offset : offset + ctx.effective_limit]
        ctx.metadata.model_used = (
            f"{config.embedding_model}-with-reranking"
            if ctx.metadata.rerank_applied
            else config.embedding_model
        )
        return final

    # -- orchestrator fallback ---------------------------------------------

    async def _fallback(self, ctx: PipelineContext, reason: str) -> SearchResponse:
        """The single legacy text-search attempt after a failed or over-budget run."""
        logger.fallback_used("legacy_text_search", reason)
        meta = ctx.metadata
        meta.record_fallback("legacy_text_search")
        if ctx.temporal is None:
            # The fail-fast checkpoint lands here before the parser ran.
            ctx.temporal = parse_temporal_query(
                ctx.request.query, now=ctx.now, default_currency=ctx.identity.currency
            )
            ctx.filters = merge_filters(ctx.request.filters, ctx.temporal)
        try:
            results = await legacy_text_search(ctx, self.store)
        except Exception as e:
            logger.error("Legacy text search failed", exception=e)
            message = e.user_message if isinstance(e, PipelineError) else PipelineError.user_message
            meta.user_message = message
            return SearchResponse(success=False, metadata=meta, error=message)

        meta.model_used = FALLBACK_MODEL
        meta.search_method = SearchMethod.LEGACY_TEXT
        return SearchResponse(
            success=True,
            results=results,
            total_results=len(results),
            metadata=meta,
        )


def create_pipeline() -> RAGPipeline:
    """Wire the pipeline against the configured providers and data store."""
    from src.llm.completion_client import create_completion_client
    from src.llm.embedding_client import EmbeddingClient
    from src.orchestrators.rag.cache import InMemoryTTLCache
    from src.orchestrators.rag.financial_analysis import FinancialAnalyzer
    from src.orchestrators.rag.store import RestDataStore

    for problem in config.validate():
        logger.warning(problem)

    llm = create_completion_client()
    store = RestDataStore()
    embedding_client = EmbeddingClient()
    cache = InMemoryTTLCache(default_ttl=config.preprocess_cache_ttl_seconds)
    return RAGPipeline(
        preprocessor=QueryPreprocessor(llm, cache=cache),
        embedder=EmbeddingGenerator(embedding_client),
        router=HybridSearchRouter(store, analyzer=FinancialAnalyzer(store, cache=cache)),
        reranker=ResultReranker(llm),
        store=store,
        resources=[r for r in (llm, store, embedding_client) if r is not None],
    )
