"""RAG search: six-stage pipeline over receipts, line items, claims and the business directory."""

from src.contracts.rag_search_v1 import SearchRequest, SearchResponse, UnifiedSearchResult
from src.orchestrators.rag.pipeline import RAGPipeline, create_pipeline
from src.orchestrators.rag.reranker import ResultReranker
from src.orchestrators.rag.router import HybridSearchRouter

__all__ = [
    "HybridSearchRouter",
    "RAGPipeline",
    "ResultReranker",
    "SearchRequest",
    "SearchResponse",
    "UnifiedSearchResult",
    "create_pipeline",
]
