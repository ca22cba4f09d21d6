"""In-memory collaborators for pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Any

import httpx

from src.contracts.rag_search_v1 import AmountRange, DateRange, Identity, SearchRequest
from src.orchestrators.rag.context import PipelineContext
from src.orchestrators.rag.embeddings import EmbeddingGenerator
from src.orchestrators.rag.pipeline import RAGPipeline
from src.orchestrators.rag.preprocessor import QueryPreprocessor
from src.orchestrators.rag.reranker import ResultReranker
from src.orchestrators.rag.router import HybridSearchRouter
from src.orchestrators.rag.store import HybridSearchParams, Row

# A Wednesday; "last week" is 2025-07-07 .. 2025-07-13.
NOW = datetime(2025, 7, 16, 12, 0)
USER = Identity(user_id="user-1", currency="MYR")
DIMENSIONS = 8


def receipt(
    receipt_id: str,
    day: str,
    total: float,
    merchant: str = "Kedai Runcit",
    currency: str = "MYR",
) -> Row:
    return {
        "id": receipt_id,
        "merchant": merchant,
        "total": total,
        "currency": currency,
        "date": day,
        "created_at": f"{day}T10:00:00+00:00",
        "predicted_category": "Groceries",
        "payment_method": "card",
        "status": "reviewed",
    }


def hybrid_row(source_id: str, similarity: float, source_type: str = "receipt", **extra: Any) -> Row:
    return {
        "id": f"emb-{source_id}-{similarity}",
        "source_type": source_type,
        "source_id": source_id,
        "content_type": "full_text",
        "content_text": extra.pop("content_text", f"content of {source_id}"),
        "similarity": similarity,
        "metadata": extra.pop("metadata", {}),
        **extra,
    }


class FakeStore:
    """Answers every DataStore call from plain lists; records what was asked."""

    def __init__(
        self,
        receipts: list[Row] | None = None,
        hybrid_rows: list[Row] | None = None,
        line_items: list[Row] | None = None,
        businesses: list[Row] | None = None,
        procedures: dict[str, list[Row]] | None = None,
    ):
        self.receipts = list(receipts or [])
        self.hybrid_rows = list(hybrid_rows or [])
        self.unified_rows: list[Row] = []
        self.embedding_rows: list[Row] = []
        self.line_items = list(line_items or [])
        self.businesses = list(businesses or [])
        self.procedures = dict(procedures or {})
        self.hybrid_delay = 0.0
        self.hybrid_error: BaseException | None = None
        self.text_search_error: BaseException | None = None
        self.calls: list[tuple[str, Any]] = []

    def called(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]

    def _receipt(self, receipt_id: str) -> Row | None:
        return next((r for r in self.receipts if r["id"] == receipt_id), None)

    async def hybrid_search(self, params: HybridSearchParams) -> list[Row]:
        self.calls.append(("hybrid_search", params))
        if self.hybrid_delay:
            await asyncio.sleep(self.hybrid_delay)
        if self.hybrid_error is not None:
            raise self.hybrid_error
        return list(self.hybrid_rows)

    async def unified_search(self, params: HybridSearchParams) -> list[Row]:
        self.calls.append(("unified_search", params))
        return list(self.unified_rows)

    async def receipts_in_range(self, user_id: str, date_range: DateRange, limit: int) -> list[Row]:
        self.calls.append(("receipts_in_range", (date_range, limit)))
        rows = [r for r in self.receipts if date_range.contains(date.fromisoformat(r["date"]))]
        rows.sort(key=lambda r: r["date"], reverse=True)
        return rows[:limit]

    async def receipt_ids_in_range(self, user_id: str, date_range: DateRange) -> list[str]:
        self.calls.append(("receipt_ids_in_range", date_range))
        return [r["id"] for r in self.receipts if date_range.contains(date.fromisoformat(r["date"]))]

    async def fetch_row(self, table: str, row_id: str, columns: str) -> Row | None:
        self.calls.append(("fetch_row", (table, row_id)))
        if table == "receipts":
            return self._receipt(row_id)
        return None

    async def line_items_matching(
        self,
        user_id: str,
        term: str,
        limit: int,
        *,
        date_range: DateRange | None = None,
        amount_range: AmountRange | None = None,
    ) -> list[Row]:
        self.calls.append(("line_items_matching", term))
        return [
            item for item in self.line_items
            if term.lower() in str(item.get("description", "")).lower()
        ][:limit]

    async def line_items_by_ids(self, ids: list[str]) -> list[Row]:
        self.calls.append(("line_items_by_ids", list(ids)))
        return [item for item in self.line_items if str(item["id"]) in ids]

    async def embeddings_text_search(self, user_id: str, text: str, limit: int) -> list[Row]:
        self.calls.append(("embeddings_text_search", text))
        return list(self.embedding_rows)[:limit]

    async def call_procedure(self, name: str, params: dict[str, Any]) -> list[Row]:
        self.calls.append(("call_procedure", (name, params)))
        return list(self.procedures.get(name, []))

    async def text_search_receipts(
        self, user_id: str, term: str, limit: int, amount_range: AmountRange | None = None
    ) -> list[Row]:
        self.calls.append(("text_search_receipts", term))
        if self.text_search_error is not None:
            raise self.text_search_error
        rows = [r for r in self.receipts if term.lower() in r["merchant"].lower()]
        if amount_range is not None:
            rows = [r for r in rows if amount_range.accepts(float(r["total"]))]
        return rows[:limit]

    async def text_search_business_directory(self, term: str, limit: int) -> list[Row]:
        self.calls.append(("text_search_business_directory", term))
        if self.text_search_error is not None:
            raise self.text_search_error
        return [b for b in self.businesses if term.lower() in b["business_name"].lower()][:limit]

    async def text_search_claims(self, team_id: str, term: str, limit: int) -> list[Row]:
        self.calls.append(("text_search_claims", term))
        return []

    async def text_search_custom_categories(self, user_id: str, term: str, limit: int) -> list[Row]:
        self.calls.append(("text_search_custom_categories", term))
        return []


def static_http_client(status: int = 200, text: str = "", json: Any = None) -> httpx.AsyncClient:
    """AsyncClient whose every request gets the same canned response."""

    def respond(request: httpx.Request) -> httpx.Response:
        if json is not None:
            return httpx.Response(status, json=json)
        return httpx.Response(status, text=text)

    return httpx.AsyncClient(transport=httpx.MockTransport(respond))


GATEWAY_PAGE = "<html><body>502 Bad Gateway</body></html>"


class FakeEmbeddingProvider:
    def __init__(self, dimensions: int = DIMENSIONS, error: BaseException | None = None):
        self.dimensions = dimensions
        self.error = error
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return [0.1] * self.dimensions


def make_context(query: str, *, identity: Identity = USER, **request: Any) -> PipelineContext:
    return PipelineContext.create(
        SearchRequest(query=query, **request), identity, budget_seconds=75, now=NOW
    )


def make_pipeline(
    store: FakeStore,
    *,
    llm: Any = None,
    reranker: Any = None,
    embedding_provider: FakeEmbeddingProvider | None = None,
    temporal_timeout_seconds: float | None = None,
) -> RAGPipeline:
    return RAGPipeline(
        preprocessor=QueryPreprocessor(llm),
        embedder=EmbeddingGenerator(embedding_provider or FakeEmbeddingProvider(), dimensions=DIMENSIONS),
        router=HybridSearchRouter(store, temporal_timeout_seconds=temporal_timeout_seconds),
        reranker=reranker or ResultReranker(llm, strategy="feature_based", model_name="test-model"),
        store=store,
        budget_seconds=75,
    )
