"""Stage 1: query understanding.

Expands the query, classifies intent and extracts entities through the
completion provider. Trivial queries skip the provider entirely; timeouts,
malformed output and provider errors produce a degraded result instead of
failing the request.
"""

import math
import re
import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.contracts.rag_search_v1 import QueryIntent, TemporalIntent
from src.core.config import config
from src.core.logger import logger
from src.core.prompts import load_rag_prompt, render_prompt
from src.llm.completion_client import CompletionProvider
from src.llm.json_output import parse_json_object
from src.llm.provider_errors import ProviderError, check_response_text
from src.observability import traceable
from src.orchestrators.rag.cache import Cache, preprocess_cache_key
from src.orchestrators.rag.constants import (
    DEFAULT_LLM_CONFIDENCE,
    DEFAULT_SUGGESTIONS,
    ERROR_CONFIDENCE,
    FALLBACK_SUGGESTIONS,
    FAST_PATH_CONFIDENCE,
    FAST_PATH_MAX_LENGTH,
    HISTORY_WINDOW,
    NO_LLM_CONFIDENCE,
    TIMEOUT_CONFIDENCE,
)
from src.orchestrators.rag.context import with_timeout
from src.orchestrators.rag.temporal_parser import ParsedTemporalQuery, parse_temporal_query

_PUNCTUATION = re.compile(r"""[?!@#$%^&*()+={}\[\]|\\:";'<>,./]""")

PreprocessSource = Literal["fast_path", "llm", "cache", "no_llm", "timeout", "error"]


class ExtractedEntities(BaseModel):
    merchants: list[str] = Field(default_factory=list)
    dates: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    amounts: list[float] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    time_ranges: list[str] = Field(default_factory=list)
    currencies: list[str] = Field(default_factory=lambda: [config.default_currency])


class QueryClassification(BaseModel):
    complexity: str = "simple"
    specificity: str = "broad"
    analysis_type: str = "descriptive"


class PreprocessResult(BaseModel):
    expanded_query: str
    intent: QueryIntent = QueryIntent.GENERAL_SEARCH
    confidence: float = NO_LLM_CONFIDENCE
    query_type: str = "conversational"
    suggested_sources: list[str] = Field(default_factory=lambda: ["receipt"])
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    alternative_queries: list[str] = Field(default_factory=list)
    query_classification: QueryClassification = Field(default_factory=QueryClassification)
    contextual_hints: list[str] = Field(default_factory=list)
    temporal_routing: TemporalIntent | None = None
    source: PreprocessSource = "no_llm"
    processing_ms: float = 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_QUALIFIERS = (
    re.compile(r"\b(top|first|latest|recent|show\s+me|find\s+me|get\s+me)\s+\d+\s*", re.I),
    re.compile(r"\b(show|find|get)\s+(me\s+)?(all|any)\s*", re.I),
    re.compile(r"\b(all|any)\s+(of\s+)?(the\s+)?", re.I),
    re.compile(r"\b(receipts?|purchases?|expenses?|transactions?)\s+(from|at|in)\s+", re.I),
)


def normalize_query(text: str) -> str:
    """Strip qualifiers and document nouns, normalize currency and company suffixes."""
    processed = " ".join((text or "").split())
    for pattern in _QUALIFIERS:
        processed = pattern.sub("", processed)
    processed = re.sub(r"\b(receipts?|purchases?|expenses?|transactions?)\b", "", processed, flags=re.I)
    processed = " ".join(processed.split())
    processed = re.sub(r"\bRM\b", "MYR", processed, flags=re.I)
    processed = re.sub(r"\bringgit\b", "MYR", processed, flags=re.I)
    processed = re.sub(r"\bsdn\.?\s*bhd\b\.?", "Sdn Bhd", processed, flags=re.I)
    processed = re.sub(r"\bpte\.?\s*ltd\b\.?", "Pte Ltd", processed, flags=re.I)

    if len(processed) < 3:
        processed = (text or "").lower().strip()
        for pattern in _QUALIFIERS:
            processed = pattern.sub("", processed)
        processed = processed.strip()
    return processed


def is_trivial_query(query: str) -> bool:
    """Single token, short, no punctuation."""
    q = (query or "").strip()
    return (
        len(q.split()) == 1
        and len(q) < FAST_PATH_MAX_LENGTH
        and not _PUNCTUATION.search(q)
    )


def fallback_suggestions(intent: QueryIntent | str) -> list[str]:
    return list(FALLBACK_SUGGESTIONS.get(str(intent), DEFAULT_SUGGESTIONS))


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _float_list(value: Any) -> list[float]:
    out: list[float] = []
    if not isinstance(value, list):
        return out
    for v in value:
        try:
            out.append(float(v))
        except (TypeError, ValueError):
            continue
    return out


def _clamp_confidence(value: Any) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LLM_CONFIDENCE
    if math.isnan(f):
        return DEFAULT_LLM_CONFIDENCE
    return max(0.0, min(1.0, f))


def _from_llm_payload(query: str, data: dict[str, Any]) -> PreprocessResult:
    entities = data.get("extractedEntities") or {}
    if not isinstance(entities, dict):
        entities = {}
    classification = data.get("queryClassification") or {}
    if not isinstance(classification, dict):
        classification = {}
    currencies = _str_list(entities.get("currencies")) or [config.default_currency]
    return PreprocessResult(
        expanded_query=str(data.get("expandedQuery") or query),
        intent=QueryIntent.parse(data.get("intent"), QueryIntent.GENERAL_SEARCH),
        confidence=_clamp_confidence(data.get("confidence", DEFAULT_LLM_CONFIDENCE)),
        query_type=str(data.get("queryType") or "conversational"),
        suggested_sources=_str_list(data.get("suggestedSources")) or ["receipt"],
        entities=ExtractedEntities(
            merchants=_str_list(entities.get("merchants")),
            dates=_str_list(entities.get("dates")),
            categories=_str_list(entities.get("categories")),
            amounts=_float_list(entities.get("amounts")),
            locations=_str_list(entities.get("locations")),
            time_ranges=_str_list(entities.get("timeRanges")),
            currencies=currencies,
        ),
        alternative_queries=_str_list(data.get("alternativeQueries")),
        query_classification=QueryClassification(
            complexity=str(classification.get("complexity") or "simple"),
            specificity=str(classification.get("specificity") or "broad"),
            analysis_type=str(classification.get("analysisType") or "descriptive"),
        ),
        contextual_hints=_str_list(data.get("contextualHints")),
        source="llm",
    )


# ---------------------------------------------------------------------------
# Preprocessor
# ---------------------------------------------------------------------------


class QueryPreprocessor:
    def __init__(
        self,
        llm: CompletionProvider | None,
        cache: Cache | None = None,
        timeout_seconds: float | None = None,
        cache_ttl_seconds: float | None = None,
    ):
        self._llm = llm
        self._cache = cache
        self._timeout = timeout_seconds or config.preprocess_timeout_seconds
        self._cache_ttl = cache_ttl_seconds or config.preprocess_cache_ttl_seconds
        self._prompt: str | None = None

    def _template(self) -> str:
        if self._prompt is None:
            self._prompt = load_rag_prompt("preprocess")
        return self._prompt

    def _build_prompt(
        self,
        query: str,
        history: list[str] | None,
        profile: dict[str, Any] | None,
    ) -> str:
        history_block = ""
        if history:
            recent = history[-HISTORY_WINDOW:]
            history_block = (
                f"\n\nConversation context (last {len(recent)} messages):\n" + "\n".join(recent)
            )
        profile_block = ""
        if profile:
            profile_block = (
                "\n\nUser profile:\n"
                f"- Currency: {profile.get('currency') or config.default_currency}\n"
                f"- Date format: {profile.get('date_format') or 'DD/MM/YYYY'}"
            )
        return render_prompt(self._template(), query=query, history=history_block, profile=profile_block)

    def _degraded(
        self,
        query: str,
        *,
        source: PreprocessSource,
        intent: QueryIntent,
        confidence: float,
        query_type: str,
    ) -> PreprocessResult:
        return PreprocessResult(
            expanded_query=query,
            intent=intent,
            confidence=confidence,
            query_type=query_type,
            source=source,
        )

    async def _call_llm(
        self,
        query: str,
        history: list[str] | None,
        profile: dict[str, Any] | None,
    ) -> PreprocessResult:
        if self._llm is None:
            raise ProviderError("No completion provider configured")
        prompt = self._build_prompt(query, history, profile)
        text = await self._llm.complete(prompt, temperature=0.2, max_tokens=2000)
        check_response_text(text)
        data = parse_json_object(text)
        if data is None:
            logger.warning(f"Preprocessing returned no JSON object: {text[:200]!r}")
            return self._degraded(
                query,
                source="error",
                intent=QueryIntent.GENERAL_SEARCH,
                confidence=ERROR_CONFIDENCE,
                query_type="conversational",
            )
        return _from_llm_payload(query, data)

    @traceable(name="rag_preprocess", run_type="chain")
    async def preprocess(
        self,
        query: str,
        *,
        user_id: str | None = None,
        history: list[str] | None = None,
        profile: dict[str, Any] | None = None,
        temporal: ParsedTemporalQuery | None = None,
    ) -> PreprocessResult:
        started = time.monotonic()
        temporal = temporal or parse_temporal_query(query)
        key = preprocess_cache_key(query, user_id)

        result = await self._lookup(key)
        if result is None:
            result = await self._compute(query, history, profile)
            if result.source in ("llm", "fast_path"):
                await self._store(key, result)

        return result.model_copy(
            update={
                "temporal_routing": temporal.temporal_intent,
                "processing_ms": (time.monotonic() - started) * 1000,
            }
        )

    async def _lookup(self, key: str) -> PreprocessResult | None:
        if self._cache is None:
            return None
        cached = await self._cache.get(key)
        if cached is None:
            return None
        if isinstance(cached, PreprocessResult):
            result = cached
        else:
            result = PreprocessResult.model_validate(cached)
        logger.debug("Preprocess cache hit")
        return result.model_copy(update={"source": "cache"})

    async def _store(self, key: str, result: PreprocessResult) -> None:
        if self._cache is None:
            return
        await self._cache.set(key, result.model_dump(mode="json"), ttl=self._cache_ttl)

    async def _compute(
        self,
        query: str,
        history: list[str] | None,
        profile: dict[str, Any] | None,
    ) -> PreprocessResult:
        if is_trivial_query(query):
            return self._degraded(
                query,
                source="fast_path",
                intent=QueryIntent.DOCUMENT_RETRIEVAL,
                confidence=FAST_PATH_CONFIDENCE,
                query_type="simple_search",
            )
        if self._llm is None:
            logger.warning("No completion provider configured; basic preprocessing only")
            return self._degraded(
                query,
                source="no_llm",
                intent=QueryIntent.GENERAL_SEARCH,
                confidence=NO_LLM_CONFIDENCE,
                query_type="conversational",
            )
        try:
            return await with_timeout(
                self._call_llm(query, history, profile), self._timeout, "LLM preprocessing"
            )
        except TimeoutError:
            logger.fallback_used("preprocess_timeout", f"no answer within {self._timeout:.0f}s")
            return self._degraded(
                query,
                source="timeout",
                intent=QueryIntent.DOCUMENT_RETRIEVAL,
                confidence=TIMEOUT_CONFIDENCE,
                query_type="timeout_fallback",
            )
        except Exception as e:
            logger.error("Query preprocessing failed", exception=e)
            return self._degraded(
                query,
                source="error",
                intent=QueryIntent.GENERAL_SEARCH,
                confidence=ERROR_CONFIDENCE,
                query_type="conversational",
            )
