"""RAG Search Contract v1.

Defines the canonical types for:
  - The search request and its filters (SearchRequest, Filters, DateRange, AmountRange)
  - The candidate/result shape every retrieval branch produces (UnifiedSearchResult)
  - The per-run metadata log and the final response (SearchMetadata, SearchResponse)

Results are copy-on-write: re-ranking and filtering produce new instances via
model_copy and never mutate a result in place.
"""

from __future__ import annotations

import math
from datetime import date
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_QUERY_LENGTH = 1000
MAX_LIMIT = 100
DEFAULT_LIMIT = 20
DEFAULT_SIMILARITY_THRESHOLD = 0.2
MIN_SIMILARITY_THRESHOLD = 0.1

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SourceType(StrEnum):
    RECEIPT = "receipt"
    CLAIM = "claim"
    TEAM_MEMBER = "team_member"
    CUSTOM_CATEGORY = "custom_category"
    BUSINESS_DIRECTORY = "business_directory"
    CONVERSATION = "conversation"
    LINE_ITEM = "line_item"
    FINANCIAL_ANALYSIS = "financial_analysis"


# Sources a caller may ask for; line items and analysis rows are produced internally.
REQUESTABLE_SOURCES = frozenset(
    {
        SourceType.RECEIPT,
        SourceType.CLAIM,
        SourceType.TEAM_MEMBER,
        SourceType.CUSTOM_CATEGORY,
        SourceType.BUSINESS_DIRECTORY,
        SourceType.CONVERSATION,
    }
)


class AccessLevel(StrEnum):
    USER = "user"
    TEAM = "team"
    PUBLIC = "public"


class RoutingStrategy(StrEnum):
    DATE_FILTER_ONLY = "date_filter_only"
    SEMANTIC_ONLY = "semantic_only"
    HYBRID_TEMPORAL_SEMANTIC = "hybrid_temporal_semantic"


class QueryIntent(StrEnum):
    FINANCIAL_ANALYSIS = "financial_analysis"
    DOCUMENT_RETRIEVAL = "document_retrieval"
    DATA_ANALYSIS = "data_analysis"
    GENERAL_SEARCH = "general_search"
    SUMMARIZATION = "summarization"
    COMPARISON = "comparison"
    HELP_GUIDANCE = "help_guidance"
    CONVERSATIONAL = "conversational"

    @classmethod
    def parse(cls, value: Any, default: "QueryIntent") -> "QueryIntent":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return default


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class DateRange(BaseModel):
    """Inclusive calendar-date range."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def ordered(self) -> DateRange:
        if self.start <= self.end:
            return self
        return DateRange(start=self.end, end=self.start)


class AmountRange(BaseModel):
    """Monetary bounds.

    Bounds are exclusive unless flagged: "over 100" keeps 100.01 but drops 100,
    while "between 50 and 100" is inclusive at both ends.
    """

    model_config = ConfigDict(frozen=True)

    min: float | None = Field(default=None, description="Lower bound")
    max: float | None = Field(default=None, description="Upper bound")
    currency: str | None = Field(default=None, description="ISO currency code, e.g. MYR")
    min_inclusive: bool = False
    max_inclusive: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> AmountRange:
        if self.min is None and self.max is None:
            raise ValueError("Amount range must specify at least min or max value")
        if self.min is not None and self.min < 0:
            raise ValueError("Amount range min cannot be negative")
        if self.max is not None and self.max < 0:
            raise ValueError("Amount range max cannot be negative")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("Amount range min must be less than or equal to max")
        return self

    def accepts(self, amount: float) -> bool:
        if self.min is not None:
            if amount < self.min or (amount == self.min and not self.min_inclusive):
                return False
        if self.max is not None:
            if amount > self.max or (amount == self.max and not self.max_inclusive):
                return False
        return True


class Filters(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_range: DateRange | None = None
    amount_range: AmountRange | None = None
    categories: list[str] = Field(default_factory=list)
    merchants: list[str] = Field(default_factory=list)
    team_id: str | None = None
    language: Literal["en", "ms"] | None = None
    priority: Literal["low", "medium", "high"] | None = None
    status: str | None = Field(default=None, description="Claim status filter")

    @field_validator("date_range")
    @classmethod
    def _start_before_end(cls, v: DateRange | None) -> DateRange | None:
        if v is not None and v.start > v.end:
            raise ValueError("Date range start must be before end")
        return v


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Validated, immutable search input."""

    model_config = ConfigDict(frozen=True)

    query: str
    sources: list[SourceType] = Field(
        default_factory=lambda: [SourceType.RECEIPT, SourceType.BUSINESS_DIRECTORY]
    )
    content_types: list[str] | None = None
    filters: Filters = Field(default_factory=Filters)
    limit: int = DEFAULT_LIMIT
    offset: int = Field(default=0, ge=0)
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    include_metadata: bool = True
    aggregation_mode: Literal["relevance", "date", "source"] = "relevance"

    @field_validator("query")
    @classmethod
    def _check_query(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Query cannot be empty")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Query is too long (max {MAX_QUERY_LENGTH} characters)")
        return v

    @field_validator("sources")
    @classmethod
    def _check_sources(cls, v: list[SourceType]) -> list[SourceType]:
        invalid = [s for s in v if s not in REQUESTABLE_SOURCES]
        if invalid:
            raise ValueError(f"Invalid sources: {', '.join(invalid)}")
        return v or [SourceType.RECEIPT, SourceType.BUSINESS_DIRECTORY]

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, v: Any) -> int:
        if v is None:
            return DEFAULT_LIMIT
        return min(max(1, int(v)), MAX_LIMIT)

    @field_validator("similarity_threshold", mode="before")
    @classmethod
    def _clamp_threshold(cls, v: Any) -> float:
        if v is None:
            return DEFAULT_SIMILARITY_THRESHOLD
        return max(MIN_SIMILARITY_THRESHOLD, min(1.0, float(v)))


class Identity(BaseModel):
    """Authenticated caller scope for one request."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    team_id: str | None = None
    currency: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class UnifiedSearchResult(BaseModel):
    """Canonical candidate/result shape shared by every retrieval branch."""

    model_config = ConfigDict(frozen=True)

    id: str
    source_type: SourceType
    source_id: str
    content_type: str = "full_text"
    title: str = ""
    description: str = ""
    similarity: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
    access_level: AccessLevel = AccessLevel.USER
    created_at: str | None = None
    content_text: str | None = Field(
        default=None, description="Raw matched text, used for re-ranking features"
    )

    @field_validator("similarity", mode="before")
    @classmethod
    def _clamp_similarity(cls, v: Any) -> float:
        try:
            f = float(v)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(f):
            return 0.0
        return max(0.0, min(1.0, f))

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.source_type.value, self.source_id)

    def amount(self) -> float | None:
        """Receipt total or claim/line-item amount, when numeric."""
        for key in ("total", "amount"):
            raw = self.metadata.get(key)
            if raw is None or isinstance(raw, bool):
                continue
            try:
                return float(raw)
            except (TypeError, ValueError):
                continue
        return None


class TemporalIntent(BaseModel):
    """Routing decision derived from the query text; computed once per request."""

    model_config = ConfigDict(frozen=True)

    is_temporal_query: bool = False
    has_semantic_content: bool = False
    routing_strategy: RoutingStrategy = RoutingStrategy.SEMANTIC_ONLY
    temporal_confidence: float = 0.0
    semantic_terms: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Metadata and response
# ---------------------------------------------------------------------------


class SearchMetadata(BaseModel):
    """Append-only log of what happened during one pipeline run."""

    query: str = ""
    routing_strategy: RoutingStrategy | None = None
    search_method: str | None = None
    sources_searched: list[str] = Field(default_factory=list)
    fallbacks_used: list[str] = Field(default_factory=list)
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)
    temporal_routing: TemporalIntent | None = None
    llm_preprocessing: dict[str, Any] | None = None
    model_used: str | None = None

    rerank_applied: bool = False
    rerank_model_used: str | None = None
    rerank_confidence_level: Literal["low", "medium", "high"] | None = None
    rerank_score: float | None = None
    rerank_candidates: int = 0

    is_fallback_result: bool = False
    fallback_strategy: str | None = None
    fallback_strategies_tried: list[str] = Field(default_factory=list)
    original_date_range: DateRange | None = None
    expanded_date_range: DateRange | None = None
    total_receipts_in_range: int | None = None
    receipt_ids_in_range: int | None = None
    user_message: str | None = None

    search_duration_ms: float = 0.0

    def record_source(self, name: str) -> None:
        if name not in self.sources_searched:
            self.sources_searched.append(name)

    def record_fallback(self, name: str) -> None:
        self.fallbacks_used.append(name)


class DateSuggestion(BaseModel):
    kind: Literal["latest_month", "nearest_week", "full_span"]
    label: str
    date_range: DateRange
    receipt_count: int


class DateAnalysis(BaseModel):
    available_dates: dict[str, int] = Field(
        default_factory=dict, description="ISO date -> receipt count"
    )
    earliest: date | None = None
    latest: date | None = None
    total_receipts: int = 0
    suggestions: list[DateSuggestion] = Field(default_factory=list)


class SmartSuggestions(BaseModel):
    date_analysis: DateAnalysis | None = None
    follow_up_suggestions: list[str] = Field(default_factory=list)
    enhanced_message: str | None = None


class SearchResponse(BaseModel):
    """What execute_search hands back to its caller."""

    success: bool
    results: list[UnifiedSearchResult] = Field(default_factory=list)
    total_results: int = 0
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)
    smart_suggestions: SmartSuggestions | None = None
    error: str | None = Field(default=None, description="Human-readable failure reason")
