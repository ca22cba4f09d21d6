"""Orchestrators: multi-step LLM pipelines (e.g. RAG search)."""

from src.orchestrators.rag import RAGPipeline, SearchRequest, SearchResponse, create_pipeline

__all__ = [
    "RAGPipeline",
    "SearchRequest",
    "SearchResponse",
    "create_pipeline",
]
