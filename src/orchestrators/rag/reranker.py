"""Stage 4: re-ranking.

Three strategies share one candidate shape:

- feature_based: deterministic weighted features blended with the retrieval
  score. No I/O, so it is the floor every other strategy falls back to.
- cross_encoder: the completion provider orders the top candidates and
  reports a confidence; the order is applied with a position boost.
- hybrid: feature_based first, then cross_encoder over the top ten, spliced
  in front of the remaining feature order.
"""

import asyncio
import json
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal

import httpx

from src.contracts.rag_search_v1 import UnifiedSearchResult
from src.core.config import config
from src.core.prompts import load_rag_prompt, render_prompt
from src.llm.completion_client import CompletionProvider
from src.llm.json_output import parse_json_object
from src.llm.provider_errors import ProviderError, check_response_text, is_transient
from src.observability import traceable
from src.orchestrators.rag.constants import (
    CONTENT_TYPE_RELEVANCE,
    CROSS_ENCODER_MAX_CANDIDATES,
    CROSS_ENCODER_POSITION_STEP,
    DEFAULT_CROSS_ENCODER_CONFIDENCE,
    FEATURE_ORIGINAL_WEIGHT,
    FEATURE_SCORE_WEIGHT,
    FEATURE_WEIGHTS,
    HYBRID_CROSS_ENCODER_TOP,
    HYBRID_MIN_CANDIDATES,
    NEUTRAL_FEATURE_SCORE,
    RECENCY_DECAY_DAYS,
    RERANK_BACKOFF_BASE_SECONDS,
    RERANK_MAX_ATTEMPTS,
    RerankStrategy,
)
from src.orchestrators.rag.errors import RerankError

logger = logging.getLogger(__name__)

ConfidenceLevel = Literal["low", "medium", "high"]

FEATURE_MODEL = "contextual_features"

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


@dataclass(frozen=True)
class ContextualFeatures:
    query_term_matches: float
    content_type_relevance: float
    recency_score: float
    user_interaction_score: float
    semantic_coherence: float
    entity_alignment: float


@dataclass(frozen=True)
class Candidate:
    result: UnifiedSearchResult
    original_score: float
    features: ContextualFeatures


@dataclass
class RerankedResult:
    results: list[UnifiedSearchResult]
    confidence: float
    confidence_level: ConfidenceLevel
    model_used: str
    strategy: str


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------


def _content_text(result: UnifiedSearchResult) -> str:
    return result.content_text or f"{result.title} {result.description}".strip()


def query_term_matches(query: str, content: str) -> float:
    """Share of query words that overlap (substring either way) a content word."""
    query_words = query.lower().split()
    content_words = content.lower().split()
    if not query_words or not content_words:
        return 0.0
    matches = sum(
        1 for qw in query_words if any(cw in qw or qw in cw for cw in content_words)
    )
    return matches / len(query_words)


def content_type_relevance(content_type: str, intent: str) -> float:
    return CONTENT_TYPE_RELEVANCE.get(intent, {}).get(content_type, NEUTRAL_FEATURE_SCORE)


def recency_score(metadata: dict[str, Any], today: date) -> float:
    """exp(-days / 30); neutral when the result carries no usable date."""
    raw = metadata.get("date")
    if not raw:
        return NEUTRAL_FEATURE_SCORE
    try:
        day = date.fromisoformat(str(raw)[:10])
    except ValueError:
        return NEUTRAL_FEATURE_SCORE
    days = max(0, (today - day).days)
    return math.exp(-days / RECENCY_DECAY_DAYS)


def semantic_coherence(content: str) -> float:
    if not content or len(content) < 10:
        return 0.3
    words = content.split()
    avg_word_length = sum(len(w) for w in words) / len(words)
    sentence_count = len(_SENTENCE_SPLIT.split(content))
    return min(1.0, (avg_word_length / 10) * (math.log(len(words)) / 5) * (sentence_count / 10))


def calculate_contextual_features(
    result: UnifiedSearchResult, query: str, intent: str, today: date
) -> ContextualFeatures:
    content = _content_text(result)
    return ContextualFeatures(
        query_term_matches=query_term_matches(query, content),
        content_type_relevance=content_type_relevance(result.content_type, intent),
        recency_score=recency_score(result.metadata, today),
        # No interaction history or entity linker yet; both stay neutral.
        user_interaction_score=NEUTRAL_FEATURE_SCORE,
        semantic_coherence=semantic_coherence(content),
        entity_alignment=NEUTRAL_FEATURE_SCORE,
    )


def feature_weights(intent: str) -> dict[str, float]:
    return FEATURE_WEIGHTS.get(intent, FEATURE_WEIGHTS["conversational"])


def feature_score(features: ContextualFeatures, weights: dict[str, float]) -> float:
    return (
        features.query_term_matches * weights["query_matches"]
        + features.content_type_relevance * weights["content_type"]
        + features.recency_score * weights["recency"]
        + features.user_interaction_score * weights["user_interaction"]
        + features.semantic_coherence * weights["semantic_coherence"]
        + features.entity_alignment * weights["entity_alignment"]
    )


def confidence_level(score: float) -> ConfidenceLevel:
    if score > 0.8:
        return "high"
    if score > 0.6:
        return "medium"
    return "low"


def build_candidates(
    results: list[UnifiedSearchResult],
    query: str,
    intent: str,
    today: date | None = None,
) -> list[Candidate]:
    today = today or datetime.now().date()
    return [
        Candidate(
            result=r,
            original_score=r.similarity,
            features=calculate_contextual_features(r, query, intent, today),
        )
        for r in results
    ]


# ---------------------------------------------------------------------------
# Cross-encoder helpers
# ---------------------------------------------------------------------------


def describe_candidates(candidates: list[Candidate]) -> str:
    lines = []
    for i, c in enumerate(candidates, start=1):
        r = c.result
        f = c.features
        content = _content_text(r)[:200]
        lines.append(
            f"{i}. [{r.source_type}:{r.content_type}]\n"
            f'Content: "{content}..."\n'
            f"Original Score: {c.original_score:.3f}\n"
            f"Query Matches: {f.query_term_matches}\n"
            f"Recency: {f.recency_score:.2f}\n"
            f"Type Relevance: {f.content_type_relevance:.2f}\n"
            f"Metadata: {json.dumps(r.metadata, default=str)}"
        )
    return "\n\n".join(lines)


def parse_ranked_order(data: dict[str, Any], count: int) -> list[int]:
    """Zero-based candidate indexes in the order the model ranked them.

    Out-of-range, repeated and non-numeric entries are dropped.
    """
    raw = data.get("rankedOrder")
    if not isinstance(raw, list):
        raise RerankError("Cross-encoder response has no rankedOrder list")
    order: list[int] = []
    for entry in raw:
        try:
            index = int(entry) - 1
        except (TypeError, ValueError):
            continue
        if 0 <= index < count and index not in order:
            order.append(index)
    if not order:
        raise RerankError("Cross-encoder rankedOrder names no known candidate")
    return order


def parse_confidence(data: dict[str, Any]) -> float:
    raw = data.get("confidenceScore")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CROSS_ENCODER_CONFIDENCE
    if math.isnan(value) or value <= 0:
        return DEFAULT_CROSS_ENCODER_CONFIDENCE
    return min(1.0, value)


def apply_ranked_order(
    candidates: list[Candidate], order: list[int], confidence: float
) -> list[UnifiedSearchResult]:
    """Reorder and boost: 1 + distance_from_bottom * 0.03, scaled by confidence, capped at 1.

    Candidates the model left out keep their relative order after the ranked ones.
    """
    ranked: list[UnifiedSearchResult] = []
    for position, index in enumerate(order):
        result = candidates[index].result
        boost = 1 + (len(order) - position) * CROSS_ENCODER_POSITION_STEP
        ranked.append(
            result.model_copy(
                update={"similarity": min(1.0, result.similarity * boost * confidence)}
            )
        )
    placed = set(order)
    ranked.extend(c.result for i, c in enumerate(candidates) if i not in placed)
    return ranked


# ---------------------------------------------------------------------------
# Re-ranker
# ---------------------------------------------------------------------------


class ResultReranker:
    def __init__(
        self,
        llm: CompletionProvider | None,
        *,
        strategy: str | None = None,
        model_name: str | None = None,
        max_attempts: int = RERANK_MAX_ATTEMPTS,
        backoff_base_seconds: float = RERANK_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._llm = llm
        self.strategy = RerankStrategy(strategy or config.rerank_strategy)
        self.model_name = model_name or config.llm_model
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_base_seconds
        self._sleep = sleep
        self._prompt: str | None = None

    def _template(self) -> str:
        if self._prompt is None:
            self._prompt = load_rag_prompt("rerank")
        return self._prompt

    # -- feature based -----------------------------------------------------

    @staticmethod
    def _feature_order(candidates: list[Candidate], intent: str) -> tuple[list[Candidate], float]:
        weights = feature_weights(intent)
        scored = [
            (
                c.original_score * FEATURE_ORIGINAL_WEIGHT
                + feature_score(c.features, weights) * FEATURE_SCORE_WEIGHT,
                i,
                c,
            )
            for i, c in enumerate(candidates)
        ]
        # Stable on ties: earlier retrieval rank wins.
        scored.sort(key=lambda s: (-s[0], s[1]))
        if not scored:
            return [], 0.0
        scores = [s[0] for s in scored]
        avg = sum(scores) / len(scores)
        variance = sum((s - avg) ** 2 for s in scores) / len(scores)
        return [c for _, _, c in scored], min(1.0, avg + (1 - math.sqrt(variance)))

    def feature_based(self, candidates: list[Candidate], intent: str) -> RerankedResult:
        ordered, confidence = self._feature_order(candidates, intent)
        return RerankedResult(
            results=[c.result for c in ordered],
            confidence=confidence,
            confidence_level=confidence_level(confidence),
            model_used=FEATURE_MODEL,
            strategy=RerankStrategy.FEATURE_BASED,
        )

    # -- cross encoder -----------------------------------------------------

    async def _complete_with_retry(self, prompt: str) -> str:
        if self._llm is None:
            raise RerankError("No completion provider configured for cross-encoding")
        for attempt in range(self._max_attempts):
            started = time.monotonic()
            try:
                text = await self._llm.complete(prompt, temperature=0.2, max_tokens=1000)
                return check_response_text(text)
            except (ProviderError, httpx.HTTPError) as e:
                last_attempt = attempt == self._max_attempts - 1
                if not is_transient(e) or last_attempt:
                    raise RerankError(f"Cross-encoder call failed: {e}") from e
                delay = self._backoff * (2**attempt)
                logger.warning(
                    "Cross-encoder attempt %d failed after %.1fs (%s); retrying in %.0fs",
                    attempt + 1, time.monotonic() - started, e, delay,
                )
                await self._sleep(delay)
        raise RerankError("Cross-encoder retries exhausted")

    async def _cross_encoder_order(
        self,
        query: str,
        intent: str,
        candidates: list[Candidate],
        hints: list[str] | None,
    ) -> RerankedResult:
        """Raises RerankError on any provider or parse failure."""
        prompt = render_prompt(
            self._template(),
            query=query,
            intent=intent,
            hints=", ".join(hints or []) or "None",
            candidates=describe_candidates(candidates),
        )
        text = await self._complete_with_retry(prompt)
        data = parse_json_object(text)
        if data is None:
            raise RerankError(f"Cross-encoder returned no JSON object: {text[:200]!r}")
        order = parse_ranked_order(data, len(candidates))
        confidence = parse_confidence(data)
        return RerankedResult(
            results=apply_ranked_order(candidates, order, confidence),
            confidence=confidence,
            confidence_level=confidence_level(confidence),
            model_used=self.model_name,
            strategy=RerankStrategy.CROSS_ENCODER,
        )

    async def cross_encoder(
        self,
        query: str,
        intent: str,
        candidates: list[Candidate],
        hints: list[str] | None = None,
    ) -> RerankedResult:
        if self._llm is None:
            return self.feature_based(candidates, intent)
        head = candidates[:CROSS_ENCODER_MAX_CANDIDATES]
        try:
            ranked = await self._cross_encoder_order(query, intent, head, hints)
        except RerankError as e:
            logger.warning("Cross-encoder re-ranking failed, using features: %s", e)
            return self.feature_based(candidates, intent)
        tail = [c.result for c in candidates[CROSS_ENCODER_MAX_CANDIDATES:]]
        ranked.results.extend(tail)
        return ranked

    # -- hybrid ------------------------------------------------------------

    async def hybrid(
        self,
        query: str,
        intent: str,
        candidates: list[Candidate],
        hints: list[str] | None = None,
    ) -> RerankedResult:
        features = self.feature_based(candidates, intent)
        if self._llm is None or len(features.results) <= HYBRID_MIN_CANDIDATES:
            return features

        ordered, _ = self._feature_order(candidates, intent)
        top = ordered[:HYBRID_CROSS_ENCODER_TOP]
        try:
            ranked = await self._cross_encoder_order(query, intent, top, hints)
        except RerankError as e:
            logger.warning("Hybrid cross-encoder pass failed, keeping feature order: %s", e)
            return features

        results = ranked.results + [c.result for c in ordered[HYBRID_CROSS_ENCODER_TOP:]]
        confidence = (ranked.confidence + features.confidence) / 2
        return RerankedResult(
            results=results,
            confidence=confidence,
            confidence_level=confidence_level(confidence),
            model_used=f"{self.model_name} + {FEATURE_MODEL}",
            strategy=RerankStrategy.HYBRID,
        )

    # -- entry point -------------------------------------------------------

    @traceable(name="rag_rerank", run_type="chain")
    async def rerank(
        self,
        query: str,
        results: list[UnifiedSearchResult],
        *,
        intent: str = "conversational",
        strategy: str | None = None,
        hints: list[str] | None = None,
        today: date | None = None,
    ) -> RerankedResult:
        chosen = RerankStrategy(strategy) if strategy else self.strategy
        if not results:
            return RerankedResult([], 0.0, "low", "none", chosen)
        candidates = build_candidates(results, query, intent, today)
        match chosen:
            case RerankStrategy.CROSS_ENCODER:
                return await self.cross_encoder(query, intent, candidates, hints)
            case RerankStrategy.HYBRID:
                return await self.hybrid(query, intent, candidates, hints)
            case _:
                return self.feature_based(candidates, intent)
