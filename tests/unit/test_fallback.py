from datetime import date

import pytest

from src.contracts.rag_search_v1 import AmountRange, DateRange, Filters, Identity, SourceType
from src.orchestrators.rag.constants import FallbackWindowName, SearchMethod
from src.orchestrators.rag.errors import AuthError, RetrievalError
from src.orchestrators.rag.fallback import (
    calculate_text_similarity,
    expand_date_range,
    legacy_text_search,
)
from tests.unit.fakes import FakeStore, make_context, receipt

LAST_WEEK = DateRange(start=date(2025, 7, 7), end=date(2025, 7, 13))


class TestExpandDateRange:
    @pytest.mark.asyncio
    async def test_exhausted_ladder_is_empty_not_an_error(self):
        ctx = make_context("receipts from last week")
        store = FakeStore()

        outcome = await expand_date_range(ctx, store, LAST_WEEK)

        assert outcome.results == []
        assert outcome.search_method == SearchMethod.FALLBACK_TEMPORAL_FAILED
        assert ctx.metadata.fallback_strategies_tried == [
            FallbackWindowName.LAST_2_MONTHS,
            FallbackWindowName.LAST_3_MONTHS,
            FallbackWindowName.RECENT_RECEIPTS,
        ]
        assert ctx.metadata.is_fallback_result is False
        assert ctx.metadata.original_date_range == LAST_WEEK
        assert len(store.called("receipts_in_range")) == 3

    @pytest.mark.asyncio
    async def test_first_window_with_receipts_wins(self):
        # Previous two calendar months of 2025-07-16: May and June.
        store = FakeStore(receipts=[receipt("r-june", "2025-06-20", 30.0)])
        ctx = make_context("receipts from last week")

        outcome = await expand_date_range(ctx, store, LAST_WEEK)

        assert [r.source_id for r in outcome.results] == ["r-june"]
        assert outcome.search_method == SearchMethod.FALLBACK_TEMPORAL
        assert outcome.results[0].similarity == 0.8
        assert outcome.results[0].metadata["fallback_strategy"] == "last_2_months"
        meta = ctx.metadata
        assert meta.is_fallback_result is True
        assert meta.fallback_strategy == "last_2_months"
        assert meta.expanded_date_range == DateRange(start=date(2025, 5, 1), end=date(2025, 6, 30))
        assert meta.fallback_strategies_tried == ["last_2_months"]

    @pytest.mark.asyncio
    async def test_recent_window_reaches_current_month(self):
        store = FakeStore(receipts=[receipt("r-today", "2025-07-16", 5.0)])
        ctx = make_context("receipts from last week")

        outcome = await expand_date_range(ctx, store, LAST_WEEK)

        assert [r.source_id for r in outcome.results] == ["r-today"]
        assert ctx.metadata.fallback_strategy == "recent_receipts"

    @pytest.mark.asyncio
    async def test_failing_windows_end_empty(self):
        store = FakeStore()

        async def broken(user_id, date_range, limit):
            raise RetrievalError("store down")

        store.receipts_in_range = broken
        ctx = make_context("receipts from last week")

        outcome = await expand_date_range(ctx, store, LAST_WEEK)

        assert outcome.results == []
        assert len(ctx.metadata.fallback_strategies_tried) == 3

    @pytest.mark.asyncio
    async def test_missing_user_is_rejected(self):
        ctx = make_context("receipts from last week", identity=Identity())

        with pytest.raises(AuthError):
            await expand_date_range(ctx, FakeStore(), LAST_WEEK)


class TestTextSimilarity:
    def test_containment(self):
        assert calculate_text_similarity("tesco", "Tesco Extra Ampang") == 0.9

    def test_partial_overlap_is_capped(self):
        assert calculate_text_similarity("tesco ampang", "Tesco Extra") == 0.5
        assert calculate_text_similarity("ampang tesco", "Tesco Extra Ampang") == 0.8

    def test_no_text(self):
        assert calculate_text_similarity("tesco", None) == 0.0
        assert calculate_text_similarity("tesco", "") == 0.0


class TestLegacyTextSearch:
    @pytest.mark.asyncio
    async def test_searches_requested_sources_and_scores(self):
        store = FakeStore(
            receipts=[receipt("r1", "2025-07-08", 20.0, merchant="Tesco Ampang")],
            businesses=[{"id": "b1", "business_name": "Tesco Stores", "business_type": "Retail"}],
        )
        ctx = make_context("tesco")

        results = await legacy_text_search(ctx, store)

        assert {r.source_type for r in results} == {SourceType.RECEIPT, SourceType.BUSINESS_DIRECTORY}
        assert all(r.similarity == 0.9 for r in results)

    @pytest.mark.asyncio
    async def test_query_is_normalized(self):
        store = FakeStore(receipts=[receipt("r1", "2025-07-08", 20.0, merchant="Tesco")])
        ctx = make_context("show me all receipts from tesco", sources=["receipt"])

        results = await legacy_text_search(ctx, store)

        assert store.called("text_search_receipts") == ["tesco"]
        assert [r.source_id for r in results] == ["r1"]

    @pytest.mark.asyncio
    async def test_filters_apply_before_pagination(self):
        store = FakeStore(
            receipts=[
                receipt("r1", "2025-07-01", 500.0, merchant="Tesco"),
                receipt("r2", "2025-07-02", 50.0, merchant="Tesco"),
                receipt("r3", "2025-07-03", 150.0, merchant="Tesco"),
                receipt("r4", "2025-07-04", 250.0, merchant="Tesco"),
            ]
        )
        ctx = make_context(
            "tesco",
            sources=["receipt"],
            limit=2,
            offset=1,
            filters=Filters(amount_range=AmountRange(min=100)),
        )

        results = await legacy_text_search(ctx, store)

        assert len(results) == 2
        assert "r2" not in {r.source_id for r in results}

    @pytest.mark.asyncio
    async def test_all_sources_failing_is_an_error(self):
        store = FakeStore()
        store.text_search_error = RetrievalError("down")
        ctx = make_context("tesco")

        with pytest.raises(RetrievalError):
            await legacy_text_search(ctx, store)

    @pytest.mark.asyncio
    async def test_claims_need_a_team(self):
        store = FakeStore()
        ctx = make_context("travel claim", sources=["claim"])

        assert await legacy_text_search(ctx, store) == []
        assert store.called("text_search_claims") == []
