"""Shared typed constants for the RAG pipeline.

Thresholds, weights and boosts live here as named values. Several were tuned
against production data and have no derivation on record; change them only
with a calibration run.
"""

from dataclasses import dataclass
from enum import StrEnum


class PipelineStage(StrEnum):
    PREPROCESS = "preprocess"
    EMBED = "embed"
    RETRIEVE = "retrieve"
    RERANK = "rerank"
    COMPILE = "compile"
    FINALIZE = "finalize"


class SearchMethod(StrEnum):
    """Values recorded in SearchMetadata.search_method."""

    ENHANCED_HYBRID = "enhanced_hybrid_search"
    LEGACY_UNIFIED = "unified_search"
    DATE_FILTER_ONLY = "date_filter_only"
    DATE_FILTER_LARGE_RANGE = "date_filter_only_large_range_optimization"
    HYBRID_TEMPORAL = "hybrid_temporal_semantic"
    HYBRID_TEMPORAL_DATE_FALLBACK = "hybrid_temporal_semantic_with_date_fallback"
    HYBRID_TEMPORAL_ERROR_FALLBACK = "date_filter_only_fallback_from_hybrid"
    FALLBACK_TEMPORAL = "fallback_temporal"
    FALLBACK_TEMPORAL_FAILED = "fallback_temporal_failed"
    LINE_ITEM = "enhanced_line_item_search"
    SIMPLE = "simple_search"
    FINANCIAL_ANALYSIS = "financial_analysis"
    LEGACY_TEXT = "fallback_text_search"


class FallbackWindowName(StrEnum):
    LAST_2_MONTHS = "last_2_months"
    LAST_3_MONTHS = "last_3_months"
    RECENT_RECEIPTS = "recent_receipts"


class RerankStrategy(StrEnum):
    FEATURE_BASED = "feature_based"
    CROSS_ENCODER = "cross_encoder"
    HYBRID = "hybrid"


class QueryCategory(StrEnum):
    """Output of the pluggable query classifier."""

    MONETARY = "monetary"
    LINE_ITEM = "line_item"
    GENERAL = "general"


class AnalysisType(StrEnum):
    SPENDING_BY_CATEGORY = "spending_by_category"
    MONTHLY_TRENDS = "monthly_trends"
    MERCHANT_ANALYSIS = "merchant_analysis"
    ANOMALIES = "anomalies"
    TIME_PATTERNS = "time_patterns"


# ---------------------------------------------------------------------------
# Timeout budget
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BudgetCheckpoint:
    """Fraction of the wall-clock budget that may be consumed before a stage starts."""

    stage: PipelineStage
    max_fraction: float


CHECKPOINT_FAIL_FAST = BudgetCheckpoint(PipelineStage.PREPROCESS, 0.8)
CHECKPOINT_EMBED = BudgetCheckpoint(PipelineStage.EMBED, 0.5)
CHECKPOINT_RETRIEVE = BudgetCheckpoint(PipelineStage.RETRIEVE, 0.6)
CHECKPOINT_RERANK = BudgetCheckpoint(PipelineStage.RERANK, 0.7)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HybridWeights:
    semantic: float
    keyword: float
    trigram: float

    def as_params(self) -> dict[str, float]:
        return {
            "semantic_weight": self.semantic,
            "keyword_weight": self.keyword,
            "trigram_weight": self.trigram,
        }


SEMANTIC_WEIGHTS = HybridWeights(semantic=0.6, keyword=0.25, trigram=0.15)
TEMPORAL_WEIGHTS = HybridWeights(semantic=0.7, keyword=0.2, trigram=0.1)

DEFAULT_TRIGRAM_THRESHOLD = 0.3
TEMPORAL_SIMILARITY_THRESHOLD = 0.1
TEMPORAL_TRIGRAM_THRESHOLD = 0.2

MIN_CANDIDATE_COUNT = 50
CANDIDATE_MULTIPLIER = 3
TEMPORAL_CANDIDATE_MULTIPLIER = 2

LARGE_RANGE_MAX_DAYS = 14
LARGE_RANGE_MAX_IDS = 100

DATE_FILTER_SIMILARITY = 1.0
FALLBACK_SIMILARITY = 0.8
FALLBACK_MIN_LIMIT = 50
SIMPLE_SEARCH_SIMILARITY = 0.8
EFFECTIVE_LIMIT_PADDING = 10

RECENT_RECEIPTS_DAYS = 90

PROCESSING_NOTE = (
    "Found {count} receipt(s) from the specified date range. Note: These receipts "
    "may still be processing for enhanced search capabilities."
)

# Line items
LINE_ITEM_PRODUCT_THRESHOLD = 0.45
LINE_ITEM_MIXED_SCRIPT_THRESHOLD = 0.25
LINE_ITEM_DEFAULT_THRESHOLD = 0.35
LINE_ITEM_EXACT_SHARE = 0.7
LINE_ITEM_EXACT_BOOST = 2.0
LINE_ITEM_DEFAULT_SIMILARITY = 0.8

# Legacy text search
TEXT_CONTAINS_SCORE = 0.9
TEXT_OVERLAP_CAP = 0.8
TEXT_MIN_RELEVANCE = 0.1

# Financial analysis rows are ranked by position
ANALYSIS_RANK_STEP = 0.01
MONTHLY_TRENDS_MONTHS_BACK = 12
MERCHANT_ANALYSIS_LIMIT = 20


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------

FAST_PATH_MAX_LENGTH = 20
FAST_PATH_CONFIDENCE = 0.8
NO_LLM_CONFIDENCE = 0.5
TIMEOUT_CONFIDENCE = 0.6
ERROR_CONFIDENCE = 0.3
DEFAULT_LLM_CONFIDENCE = 0.7
HISTORY_WINDOW = 3


# ---------------------------------------------------------------------------
# Re-ranking
# ---------------------------------------------------------------------------

CROSS_ENCODER_MAX_CANDIDATES = 20
HYBRID_CROSS_ENCODER_TOP = 10
HYBRID_MIN_CANDIDATES = 5
CROSS_ENCODER_POSITION_STEP = 0.03
DEFAULT_CROSS_ENCODER_CONFIDENCE = 0.8
FEATURE_ORIGINAL_WEIGHT = 0.6
FEATURE_SCORE_WEIGHT = 0.4
RECENCY_DECAY_DAYS = 30.0
NEUTRAL_FEATURE_SCORE = 0.5
RERANK_MAX_ATTEMPTS = 3
RERANK_BACKOFF_BASE_SECONDS = 1.0
SIMPLE_QUERY_RERANK_MAX = 10
FALLBACK_RERANK_SCORE = 0.3

FEATURE_WEIGHTS: dict[str, dict[str, float]] = {
    "financial_analysis": {
        "query_matches": 0.3,
        "content_type": 0.25,
        "recency": 0.2,
        "user_interaction": 0.1,
        "semantic_coherence": 0.1,
        "entity_alignment": 0.05,
    },
    "document_retrieval": {
        "query_matches": 0.4,
        "content_type": 0.2,
        "recency": 0.15,
        "user_interaction": 0.15,
        "semantic_coherence": 0.05,
        "entity_alignment": 0.05,
    },
    "summarization": {
        "query_matches": 0.2,
        "content_type": 0.3,
        "recency": 0.25,
        "user_interaction": 0.1,
        "semantic_coherence": 0.1,
        "entity_alignment": 0.05,
    },
    "conversational": {
        "query_matches": 0.25,
        "content_type": 0.15,
        "recency": 0.2,
        "user_interaction": 0.25,
        "semantic_coherence": 0.1,
        "entity_alignment": 0.05,
    },
}

CONTENT_TYPE_RELEVANCE: dict[str, dict[str, float]] = {
    "financial_analysis": {
        "full_text": 0.9,
        "merchant": 0.8,
        "line_items": 0.9,
        "total": 0.8,
        "category": 0.7,
        "notes": 0.6,
    },
    "document_retrieval": {
        "merchant": 0.9,
        "full_text": 0.8,
        "notes": 0.7,
        "line_items": 0.6,
        "category": 0.5,
    },
}


# ---------------------------------------------------------------------------
# Keyword lists
# ---------------------------------------------------------------------------

LINE_ITEM_INDICATORS: tuple[str, ...] = (
    # food
    "yee mee", "mee", "nasi", "roti", "teh", "kopi", "ayam", "ikan", "daging",
    "sayur", "buah", "noodles", "rice", "chicken", "fish", "beef", "vegetables",
    "fruit", "bread", "cake", "pizza", "burger", "sandwich", "salad", "soup",
    # line-item vocabulary
    "item", "items", "line item", "line items", "product", "products",
    "bought", "purchased", "ordered", "ate", "food", "drink", "beverage",
    # local dishes
    "laksa", "rendang", "satay", "char kway teow", "hokkien mee", "wan tan mee",
    "bak kut teh", "cendol", "ais kacang", "rojak", "popiah", "dim sum",
    # groceries
    "minced", "oil", "egg", "eggs", "telur", "minyak", "garam", "salt", "sugar",
    "gula", "beras", "flour", "tepung", "susu", "milk", "cheese", "butter",
    # brands
    "powercat", "coca cola", "pepsi", "sprite", "fanta", "nestle", "maggi",
    "milo", "horlicks", "ovaltine", "kit kat", "snickers", "twix", "oreo",
)

NON_PRODUCT_TEMPORAL_PHRASES: tuple[str, ...] = (
    "last month", "this month", "next month", "last week", "this week", "next week",
    "last year", "this year", "next year", "last quarter", "this quarter",
    "yesterday", "today", "tomorrow", "recent", "past month", "past week",
    "past year", "current month", "current week", "current year",
)

PRODUCT_STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "up", "about", "into", "through", "during", "before",
        "after", "above", "below", "between", "among", "this", "that", "these",
        "those", "i", "me", "my", "myself", "we", "our", "ours", "ourselves",
        "you", "your", "yours", "yourself", "yourselves", "he", "him", "his",
        "himself", "she", "her", "hers", "herself", "it", "its", "itself",
        "they", "them", "their", "theirs", "themselves", "what", "which",
        "who", "whom", "whose", "am", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "having", "do", "does", "did", "doing",
        "will", "would", "could", "should", "may", "might", "must", "can",
        "shall", "receipt", "receipts", "transaction", "transactions",
        "purchase", "purchases", "expense", "expenses",
        "last", "next", "previous", "current", "recent", "past", "future",
        "today", "yesterday", "tomorrow", "week", "month", "year", "day", "time",
        "ago", "since", "until", "when", "while", "now", "then", "later", "earlier",
    }
)

ANALYSIS_KEYWORDS: tuple[tuple[AnalysisType, tuple[str, ...]], ...] = (
    (AnalysisType.SPENDING_BY_CATEGORY, ("category", "categories", "spending by")),
    (AnalysisType.MONTHLY_TRENDS, ("monthly", "month", "trend")),
    (AnalysisType.MERCHANT_ANALYSIS, ("merchant", "store", "shop")),
    (AnalysisType.ANOMALIES, ("anomal", "unusual", "strange")),
    (AnalysisType.TIME_PATTERNS, ("time", "when", "pattern")),
)

FALLBACK_SUGGESTIONS: dict[str, list[str]] = {
    "financial_analysis": [
        "Show me spending trends for this category",
        "Compare this month to last month",
        "Find my top merchants in this category",
    ],
    "document_retrieval": [
        "Show me more receipts from this merchant",
        "Find receipts from the same time period",
        "Search for similar transactions",
    ],
    "summarization": [
        "Break down by category",
        "Show me the details",
        "Compare to previous period",
    ],
    "comparison": [
        "Show me the trend over time",
        "Break down the differences",
        "Analyze the patterns",
    ],
    "help_guidance": [
        "Show me more features",
        "How do I upload receipts?",
        "What can I ask you?",
    ],
    "conversational": [
        "Tell me more about my spending",
        "What insights do you have?",
        "Help me organize my receipts",
    ],
}

DEFAULT_SUGGESTIONS = [
    "Refine my search",
    "Show me related results",
    "Search in a different category",
]
