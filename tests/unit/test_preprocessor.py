import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from src.contracts.rag_search_v1 import QueryIntent, RoutingStrategy
from src.llm.provider_errors import ProviderUnavailableError
from src.orchestrators.rag.cache import InMemoryTTLCache, preprocess_cache_key
from src.orchestrators.rag.preprocessor import (
    QueryPreprocessor,
    fallback_suggestions,
    is_trivial_query,
    normalize_query,
)

LLM_PAYLOAD = {
    "expandedQuery": "starbucks coffee receipts cafe beverages",
    "intent": "document_retrieval",
    "confidence": 0.9,
    "queryType": "specific",
    "suggestedSources": ["receipt", "business_directory"],
    "extractedEntities": {"merchants": ["Starbucks"], "amounts": ["12.50", "n/a"]},
    "alternativeQueries": ["starbucks purchases"],
    "queryClassification": {"complexity": "simple", "specificity": "specific", "analysisType": "descriptive"},
    "contextualHints": ["coffee shop"],
}


def _llm(*responses) -> AsyncMock:
    llm = AsyncMock()
    llm.complete = AsyncMock(side_effect=list(responses))
    return llm


class TestHelpers:
    @pytest.mark.parametrize(
        "query, trivial",
        [
            ("starbucks", True),
            ("Starbucks coffee", False),
            ("what?", False),
            ("averyveryverylongmerchantname", False),
        ],
    )
    def test_is_trivial_query(self, query, trivial):
        assert is_trivial_query(query) is trivial

    def test_normalize_query(self):
        assert normalize_query("show me all receipts from tesco") == "tesco"
        assert normalize_query("Mydin sdn. bhd. RM 50") == "Mydin Sdn Bhd MYR 50"

    def test_normalize_keeps_short_queries(self):
        assert normalize_query("receipts") == "receipts"

    def test_fallback_suggestions_per_intent(self):
        assert fallback_suggestions(QueryIntent.COMPARISON)[0] == "Show me the trend over time"
        assert fallback_suggestions("data_analysis") == [
            "Refine my search",
            "Show me related results",
            "Search in a different category",
        ]


class TestPreprocess:
    @pytest.mark.asyncio
    async def test_fast_path_skips_the_provider(self):
        llm = _llm()
        preprocessor = QueryPreprocessor(llm)

        result = await preprocessor.preprocess("starbucks")

        assert result.source == "fast_path"
        assert result.intent == QueryIntent.DOCUMENT_RETRIEVAL
        assert result.confidence == 0.8
        assert result.expanded_query == "starbucks"
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_answer_is_parsed(self):
        llm = _llm(f"Here you go:\n```json\n{json.dumps(LLM_PAYLOAD)}\n```")
        preprocessor = QueryPreprocessor(llm)

        result = await preprocessor.preprocess(
            "starbucks coffee last week",
            history=["first message", "second message", "third message", "fourth message"],
        )

        assert result.source == "llm"
        assert result.intent == QueryIntent.DOCUMENT_RETRIEVAL
        assert result.confidence == 0.9
        assert result.entities.merchants == ["Starbucks"]
        assert result.entities.amounts == [12.5]
        assert result.entities.currencies == ["MYR"]
        assert result.contextual_hints == ["coffee shop"]
        assert result.temporal_routing is not None
        assert result.temporal_routing.routing_strategy == RoutingStrategy.HYBRID_TEMPORAL_SEMANTIC
        prompt = llm.complete.await_args.args[0]
        assert "starbucks coffee last week" in prompt
        # Only the last three history messages are sent.
        assert "first message" not in prompt
        assert "fourth message" in prompt

    @pytest.mark.asyncio
    async def test_unknown_intent_and_bad_confidence_degrade(self):
        payload = {"intent": "shopping", "confidence": "very"}
        preprocessor = QueryPreprocessor(_llm(json.dumps(payload)))

        result = await preprocessor.preprocess("grab rides to work")

        assert result.intent == QueryIntent.GENERAL_SEARCH
        assert result.confidence == 0.7
        assert result.expanded_query == "grab rides to work"

    @pytest.mark.asyncio
    async def test_timeout_returns_degraded_result(self):
        async def slow(prompt, **kwargs):
            await asyncio.sleep(0.5)
            return json.dumps(LLM_PAYLOAD)

        llm = AsyncMock()
        llm.complete = slow
        preprocessor = QueryPreprocessor(llm, timeout_seconds=0.01)

        result = await preprocessor.preprocess("starbucks coffee receipts")

        assert result.source == "timeout"
        assert result.intent == QueryIntent.DOCUMENT_RETRIEVAL
        assert result.confidence == 0.6
        assert result.query_type == "timeout_fallback"

    @pytest.mark.asyncio
    async def test_provider_error_returns_degraded_result(self):
        preprocessor = QueryPreprocessor(_llm(ProviderUnavailableError("down")))

        result = await preprocessor.preprocess("starbucks coffee receipts")

        assert result.source == "error"
        assert result.confidence == 0.3
        assert result.intent == QueryIntent.GENERAL_SEARCH

    @pytest.mark.asyncio
    async def test_unexpected_client_error_returns_degraded_result(self):
        cache = InMemoryTTLCache()
        preprocessor = QueryPreprocessor(_llm(AttributeError("'list' object has no attribute 'get'")), cache=cache)

        result = await preprocessor.preprocess("starbucks coffee receipts", user_id="user-1")

        assert result.source == "error"
        assert await cache.get(preprocess_cache_key("starbucks coffee receipts", "user-1")) is None

    @pytest.mark.asyncio
    async def test_no_json_returns_degraded_result(self):
        preprocessor = QueryPreprocessor(_llm("I cannot help with that"))

        result = await preprocessor.preprocess("starbucks coffee receipts")

        assert result.source == "error"

    @pytest.mark.asyncio
    async def test_no_provider(self):
        result = await QueryPreprocessor(None).preprocess("starbucks coffee receipts")

        assert result.source == "no_llm"
        assert result.confidence == 0.5


class TestPreprocessCache:
    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self):
        llm = _llm(json.dumps(LLM_PAYLOAD), json.dumps(LLM_PAYLOAD))
        preprocessor = QueryPreprocessor(llm, cache=InMemoryTTLCache())

        first = await preprocessor.preprocess("Starbucks coffee", user_id="u1")
        second = await preprocessor.preprocess("starbucks   COFFEE", user_id="u1")

        assert first.source == "llm"
        assert second.source == "cache"
        assert second.expanded_query == first.expanded_query
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_is_per_user(self):
        llm = _llm(json.dumps(LLM_PAYLOAD), json.dumps(LLM_PAYLOAD))
        preprocessor = QueryPreprocessor(llm, cache=InMemoryTTLCache())

        await preprocessor.preprocess("starbucks coffee", user_id="u1")
        other = await preprocessor.preprocess("starbucks coffee", user_id="u2")

        assert other.source == "llm"
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_degraded_results_are_not_cached(self):
        llm = _llm(ProviderUnavailableError("down"), json.dumps(LLM_PAYLOAD))
        preprocessor = QueryPreprocessor(llm, cache=InMemoryTTLCache())

        first = await preprocessor.preprocess("starbucks coffee", user_id="u1")
        second = await preprocessor.preprocess("starbucks coffee", user_id="u1")

        assert first.source == "error"
        assert second.source == "llm"

    @pytest.mark.asyncio
    async def test_cache_entries_expire(self):
        cache = InMemoryTTLCache()
        key = preprocess_cache_key("q", "u1")

        await cache.set(key, {"expanded_query": "q"}, ttl=0)

        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_oldest_entry_is_evicted(self):
        cache = InMemoryTTLCache(max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        assert await cache.get("a") is None
        assert await cache.get("c") == 3
        assert len(cache) == 2
