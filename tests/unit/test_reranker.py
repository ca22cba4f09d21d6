import math
from datetime import date
from unittest.mock import AsyncMock

import pytest

from src.contracts.rag_search_v1 import SourceType, UnifiedSearchResult
from src.llm.provider_errors import (
    MalformedResponseError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from src.orchestrators.rag.errors import RerankError
from src.orchestrators.rag.reranker import (
    FEATURE_MODEL,
    ResultReranker,
    apply_ranked_order,
    build_candidates,
    confidence_level,
    parse_confidence,
    parse_ranked_order,
    query_term_matches,
    recency_score,
)

TODAY = date(2025, 7, 16)
QUERY = "nasi lemak breakfast"


def _results(count: int) -> list[UnifiedSearchResult]:
    return [
        UnifiedSearchResult(
            id=f"r{i}",
            source_type=SourceType.RECEIPT,
            source_id=f"r{i}",
            title=f"Kedai {i}",
            description="nasi lemak" if i % 2 else "teh tarik",
            similarity=round(0.9 - i * 0.05, 2),
            metadata={"date": f"2025-07-{i + 1:02d}"},
            content_text=f"Kedai {i} nasi lemak breakfast" if i % 3 == 0 else None,
        )
        for i in range(count)
    ]


def _llm(*responses) -> AsyncMock:
    llm = AsyncMock()
    llm.complete = AsyncMock(side_effect=list(responses))
    return llm


async def _feature_ids(results: list[UnifiedSearchResult]) -> list[str]:
    reranker = ResultReranker(None, strategy="feature_based")
    ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)
    return [r.id for r in ranked.results]


class TestFeatures:
    def test_query_term_matches_is_a_share(self):
        assert query_term_matches("nasi lemak", "Nasi Lemak Antarabangsa") == 1.0
        assert query_term_matches("nasi goreng", "nasi lemak") == 0.5
        assert query_term_matches("", "anything") == 0.0

    def test_recency_decays_over_thirty_days(self):
        assert recency_score({"date": "2025-07-16"}, TODAY) == 1.0
        assert recency_score({"date": "2025-06-16"}, TODAY) == pytest.approx(math.exp(-1))

    def test_recency_is_neutral_without_date_and_clamped_for_future(self):
        assert recency_score({}, TODAY) == 0.5
        assert recency_score({"date": "soon"}, TODAY) == 0.5
        assert recency_score({"date": "2025-08-01"}, TODAY) == 1.0

    def test_confidence_levels(self):
        assert confidence_level(0.81) == "high"
        assert confidence_level(0.7) == "medium"
        assert confidence_level(0.6) == "low"


class TestRankedOrderParsing:
    def test_one_based_numbers_become_indexes(self):
        assert parse_ranked_order({"rankedOrder": [3, 1, 2]}, 3) == [2, 0, 1]

    def test_unknown_and_repeated_entries_are_dropped(self):
        assert parse_ranked_order({"rankedOrder": [2, 2, 9, "x", 1]}, 3) == [1, 0]

    def test_missing_order_is_an_error(self):
        with pytest.raises(RerankError):
            parse_ranked_order({"reasoning": "none"}, 3)
        with pytest.raises(RerankError):
            parse_ranked_order({"rankedOrder": [7]}, 3)

    def test_confidence_defaults(self):
        assert parse_confidence({}) == 0.8
        assert parse_confidence({"confidenceScore": 0}) == 0.8
        assert parse_confidence({"confidenceScore": 1.7}) == 1.0
        assert parse_confidence({"confidenceScore": "0.6"}) == 0.6

    def test_boost_is_capped_and_unranked_candidates_follow(self):
        candidates = build_candidates(_results(3), QUERY, "document_retrieval", TODAY)

        ranked = apply_ranked_order(candidates, [1], 1.0)

        assert [r.id for r in ranked] == ["r1", "r0", "r2"]
        assert ranked[0].similarity == pytest.approx(min(1.0, 0.85 * 1.03))
        # Unranked candidates keep their score.
        assert ranked[1].similarity == 0.9


class TestFeatureBased:
    @pytest.mark.asyncio
    async def test_empty_input(self):
        ranked = await ResultReranker(None, strategy="hybrid").rerank(QUERY, [], today=TODAY)

        assert ranked.results == []
        assert ranked.confidence == 0.0
        assert ranked.model_used == "none"

    @pytest.mark.asyncio
    async def test_is_deterministic_and_keeps_scores(self):
        results = _results(6)
        reranker = ResultReranker(None, strategy="feature_based")

        first = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)
        second = await reranker.rerank(QUERY, list(results), intent="document_retrieval", today=TODAY)

        assert [r.id for r in first.results] == [r.id for r in second.results]
        assert sorted(r.similarity for r in first.results) == sorted(r.similarity for r in results)
        assert first.model_used == FEATURE_MODEL
        assert 0.0 <= first.confidence <= 1.0

    @pytest.mark.asyncio
    async def test_cross_encoder_without_provider_uses_features(self):
        results = _results(4)
        ranked = await ResultReranker(None, strategy="cross_encoder").rerank(QUERY, results, today=TODAY)

        assert ranked.model_used == FEATURE_MODEL


class TestCrossEncoder:
    @pytest.mark.asyncio
    async def test_invalid_json_falls_back_to_feature_order(self):
        results = _results(6)
        llm = _llm("I think the first one is best.")
        reranker = ResultReranker(llm, strategy="cross_encoder", model_name="judge")

        ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)

        assert [r.id for r in ranked.results] == await _feature_ids(results)
        assert ranked.model_used == FEATURE_MODEL
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_hybrid_invalid_json_keeps_feature_order(self):
        results = _results(8)
        llm = _llm('{"reasoning": "no order given"}')
        reranker = ResultReranker(llm, strategy="hybrid", model_name="judge")

        ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)

        assert [r.id for r in ranked.results] == await _feature_ids(results)
        assert ranked.model_used == FEATURE_MODEL

    @pytest.mark.asyncio
    async def test_model_order_is_applied(self):
        results = _results(3)
        llm = _llm('```json\n{"rankedOrder": [3, 1, 2], "confidenceScore": 0.9}\n```')
        reranker = ResultReranker(llm, strategy="cross_encoder", model_name="judge")

        ranked = await reranker.rerank(QUERY, results, today=TODAY)

        assert [r.id for r in ranked.results] == ["r2", "r0", "r1"]
        assert ranked.model_used == "judge"
        assert ranked.confidence == 0.9
        assert ranked.confidence_level == "high"
        prompt = llm.complete.await_args.args[0]
        assert QUERY in prompt
        assert "{candidates}" not in prompt

    @pytest.mark.asyncio
    async def test_only_first_twenty_go_to_the_model(self):
        results = _results(25)
        order = ", ".join(str(i) for i in range(20, 0, -1))
        llm = _llm(f'{{"rankedOrder": [{order}], "confidenceScore": 0.7}}')
        reranker = ResultReranker(llm, strategy="cross_encoder", model_name="judge")

        ranked = await reranker.rerank(QUERY, results, today=TODAY)

        ids = [r.id for r in ranked.results]
        assert ids[:2] == ["r19", "r18"]
        assert ids[20:] == ["r20", "r21", "r22", "r23", "r24"]

    @pytest.mark.asyncio
    async def test_transient_errors_retry_with_backoff(self):
        results = _results(2)
        llm = _llm(
            ProviderUnavailableError("busy"),
            "OVERLOADED, try later",
            '{"rankedOrder": [2, 1], "confidenceScore": 0.9}',
        )
        sleep = AsyncMock()
        reranker = ResultReranker(llm, strategy="cross_encoder", model_name="judge", sleep=sleep)

        ranked = await reranker.rerank(QUERY, results, today=TODAY)

        assert [r.id for r in ranked.results] == ["r1", "r0"]
        assert llm.complete.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        results = _results(6)
        llm = _llm(*[ProviderUnavailableError("busy")] * 3)
        sleep = AsyncMock()
        reranker = ResultReranker(llm, strategy="cross_encoder", sleep=sleep)

        ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)

        assert llm.complete.await_count == 3
        assert sleep.await_count == 2
        assert ranked.model_used == FEATURE_MODEL

    @pytest.mark.asyncio
    async def test_fatal_marker_is_not_retried(self):
        results = _results(6)
        llm = _llm("RATE_LIMIT_EXCEEDED")
        sleep = AsyncMock()
        reranker = ResultReranker(llm, strategy="cross_encoder", sleep=sleep)

        ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)

        assert llm.complete.await_count == 1
        sleep.assert_not_awaited()
        assert ranked.model_used == FEATURE_MODEL

    @pytest.mark.asyncio
    async def test_rate_limit_exception_is_not_retried(self):
        llm = _llm(ProviderRateLimitError("quota"))
        sleep = AsyncMock()
        reranker = ResultReranker(llm, strategy="cross_encoder", sleep=sleep)

        await reranker.rerank(QUERY, _results(3), today=TODAY)

        assert llm.complete.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_provider_bodies_are_retried(self):
        llm = _llm(
            MalformedResponseError("gateway page"),
            '{"rankedOrder": [2, 1], "confidenceScore": 0.9}',
        )
        sleep = AsyncMock()
        reranker = ResultReranker(llm, strategy="cross_encoder", model_name="judge", sleep=sleep)

        ranked = await reranker.rerank(QUERY, _results(2), today=TODAY)

        assert [r.id for r in ranked.results] == ["r1", "r0"]
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_judge_call_without_provider_is_a_rerank_error(self):
        reranker = ResultReranker(None, strategy="cross_encoder")

        with pytest.raises(RerankError):
            await reranker._complete_with_retry("rank these")


class TestHybrid:
    @pytest.mark.asyncio
    async def test_small_sets_use_features_only(self):
        llm = _llm()
        reranker = ResultReranker(llm, strategy="hybrid")

        ranked = await reranker.rerank(QUERY, _results(5), today=TODAY)

        assert ranked.model_used == FEATURE_MODEL
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_top_ten_are_spliced_ahead_of_the_rest(self):
        results = _results(12)
        feature_ids = await _feature_ids(results)
        # Reverse the feature top ten.
        llm = _llm('{"rankedOrder": [10, 9, 8, 7, 6, 5, 4, 3, 2, 1], "confidenceScore": 0.9}')
        reranker = ResultReranker(llm, strategy="hybrid", model_name="judge")

        ranked = await reranker.rerank(QUERY, results, intent="document_retrieval", today=TODAY)

        ids = [r.id for r in ranked.results]
        assert ids[:10] == list(reversed(feature_ids[:10]))
        assert ids[10:] == feature_ids[10:]
        assert ranked.model_used == f"judge + {FEATURE_MODEL}"
