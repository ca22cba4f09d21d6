"""Data-store collaborator: the protocol the core calls and a PostgREST adapter.

Row-level access control is enforced by the store itself; every call still
passes the owning user (or team) so the queries stay scoped when the key in
use bypasses it.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

import httpx

from src.contracts.rag_search_v1 import AmountRange, DateRange
from src.core.config import config
from src.core.logger import logger as pipeline_logger
from src.observability import trace
from src.orchestrators.rag.constants import SEMANTIC_WEIGHTS, HybridWeights
from src.orchestrators.rag.errors import RetrievalError

logger = logging.getLogger(__name__)

Row = dict[str, Any]

RECEIPT_COLUMNS = "id,merchant,total,currency,date,created_at,predicted_category,payment_method,status"
LINE_ITEM_COLUMNS = (
    "id,description,amount,receipt_id,"
    "receipts!line_items_receipt_id_fkey(id,merchant,date,total,currency,user_id)"
)

# Columns fetched when enriching a retrieved candidate, per entity table.
ENRICHMENT_COLUMNS: dict[str, str] = {
    "receipts": "merchant,total,currency,date,status,predicted_category",
    "claims": "title,description,status,priority,amount,currency",
    "team_members": "role,status,team_id,profiles:user_id(first_name,last_name,email)",
    "custom_categories": "name,color,icon,user_id",
    "malaysian_business_directory": (
        "business_name,business_name_malay,business_type,state,city,"
        "address_line1,address_line2,postcode,is_active"
    ),
}


@dataclass
class HybridSearchParams:
    """Arguments of the hybrid-search stored procedure."""

    query_embedding: list[float]
    query_text: str
    user_filter: str
    source_types: list[str] = field(default_factory=lambda: ["receipt"])
    content_types: list[str] | None = None
    similarity_threshold: float = 0.2
    trigram_threshold: float = 0.3
    weights: HybridWeights = SEMANTIC_WEIGHTS
    match_count: int = 50
    team_filter: str | None = None
    language_filter: str | None = None
    amount_min: float | None = None
    amount_max: float | None = None
    amount_currency: str | None = None
    date_start: date | None = None
    date_end: date | None = None
    receipt_ids_filter: list[str] | None = None

    def to_rpc(self) -> dict[str, Any]:
        # enhanced_hybrid_search has no date arguments; a date range reaches it
        # as receipt_ids_filter, and extra keys make the RPC lookup fail.
        payload: dict[str, Any] = {
            "query_embedding": self.query_embedding,
            "query_text": self.query_text,
            "source_types": self.source_types,
            "content_types": self.content_types,
            "similarity_threshold": self.similarity_threshold,
            "trigram_threshold": self.trigram_threshold,
            "match_count": self.match_count,
            "user_filter": self.user_filter,
            "team_filter": self.team_filter,
            "language_filter": self.language_filter,
            "amount_min": self.amount_min,
            "amount_max": self.amount_max,
            "amount_currency": self.amount_currency,
            **self.weights.as_params(),
        }
        if self.receipt_ids_filter is not None:
            payload["receipt_ids_filter"] = self.receipt_ids_filter
        return payload

    def to_legacy_rpc(self) -> dict[str, Any]:
        """Single-signal `unified_search` takes dates directly and no text signals."""
        return {
            "query_embedding": self.query_embedding,
            "source_types": self.source_types,
            "content_types": self.content_types,
            "similarity_threshold": self.similarity_threshold,
            "match_count": self.match_count,
            "user_filter": self.user_filter,
            "team_filter": self.team_filter,
            "language_filter": self.language_filter,
            "start_date": self.date_start.isoformat() if self.date_start else None,
            "end_date": self.date_end.isoformat() if self.date_end else None,
            "min_amount": self.amount_min,
            "max_amount": self.amount_max,
        }


class DataStore(Protocol):
    """Every data-store call the pipeline makes."""

    async def hybrid_search(self, params: HybridSearchParams) -> list[Row]: ...

    async def unified_search(self, params: HybridSearchParams) -> list[Row]: ...

    async def receipts_in_range(self, user_id: str, date_range: DateRange, limit: int) -> list[Row]: ...

    async def receipt_ids_in_range(self, user_id: str, date_range: DateRange) -> list[str]: ...

    async def fetch_row(self, table: str, row_id: str, columns: str) -> Row | None: ...

    async def line_items_matching(
        self,
        user_id: str,
        term: str,
        limit: int,
        *,
        date_range: DateRange | None = None,
        amount_range: AmountRange | None = None,
    ) -> list[Row]: ...

    async def line_items_by_ids(self, ids: list[str]) -> list[Row]: ...

    async def embeddings_text_search(self, user_id: str, text: str, limit: int) -> list[Row]: ...

    async def call_procedure(self, name: str, params: dict[str, Any]) -> list[Row]: ...

    async def text_search_receipts(
        self, user_id: str, term: str, limit: int, amount_range: AmountRange | None = None
    ) -> list[Row]: ...

    async def text_search_business_directory(self, term: str, limit: int) -> list[Row]: ...

    async def text_search_claims(self, team_id: str, term: str, limit: int) -> list[Row]: ...

    async def text_search_custom_categories(self, user_id: str, term: str, limit: int) -> list[Row]: ...


def _pattern(term: str) -> str:
    # PostgREST ilike wildcard; reserved characters would split the filter list.
    cleaned = "".join(ch for ch in term if ch not in ",()*")
    return f"*{cleaned.strip()}*"


class RestDataStore:
    """PostgREST-style HTTP adapter (`/rest/v1/<table>`, `/rest/v1/rpc/<fn>`)."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 35.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or config.data_store_url).rstrip("/")
        key = (api_key if api_key is not None else config.data_store_key).strip()
        headers = {"Content-Type": "application/json"}
        if key:
            headers["apikey"] = key
            headers["Authorization"] = f"Bearer {key}"
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> list[Row]:
        started = time.monotonic()
        try:
            response = await self.client.request(method, f"{self.base_url}/rest/v1/{path}", **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            pipeline_logger.external_call("data_store", path, time.monotonic() - started, ok=False)
            raise RetrievalError(
                f"Data store {path} returned {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            pipeline_logger.external_call("data_store", path, time.monotonic() - started, ok=False)
            raise RetrievalError(f"Data store {path} failed: {e}") from e
        except ValueError as e:
            raise RetrievalError(f"Data store {path} returned invalid JSON") from e
        pipeline_logger.external_call("data_store", path, time.monotonic() - started)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    async def _select(self, table: str, params: list[tuple[str, str]]) -> list[Row]:
        return await self._request("GET", table, params=params)

    async def _rpc(self, name: str, payload: dict[str, Any]) -> list[Row]:
        async with trace("data_store_rpc", "retriever", inputs={"procedure": name}) as run:
            rows = await self._request("POST", f"rpc/{name}", json=payload)
            run.end(outputs={"rows": len(rows)})
            return rows

    async def hybrid_search(self, params: HybridSearchParams) -> list[Row]:
        return await self._rpc("enhanced_hybrid_search", params.to_rpc())

    async def unified_search(self, params: HybridSearchParams) -> list[Row]:
        return await self._rpc("unified_search", params.to_legacy_rpc())

    async def call_procedure(self, name: str, params: dict[str, Any]) -> list[Row]:
        return await self._rpc(name, params)

    async def receipts_in_range(self, user_id: str, date_range: DateRange, limit: int) -> list[Row]:
        return await self._select(
            "receipts",
            [
                ("select", RECEIPT_COLUMNS),
                ("user_id", f"eq.{user_id}"),
                ("date", f"gte.{date_range.start.isoformat()}"),
                ("date", f"lte.{date_range.end.isoformat()}"),
                ("order", "date.desc"),
                ("limit", str(limit)),
            ],
        )

    async def receipt_ids_in_range(self, user_id: str, date_range: DateRange) -> list[str]:
        rows = await self._select(
            "receipts",
            [
                ("select", "id"),
                ("user_id", f"eq.{user_id}"),
                ("date", f"gte.{date_range.start.isoformat()}"),
                ("date", f"lte.{date_range.end.isoformat()}"),
            ],
        )
        return [str(r["id"]) for r in rows if r.get("id") is not None]

    async def fetch_row(self, table: str, row_id: str, columns: str) -> Row | None:
        rows = await self._select(
            table, [("select", columns), ("id", f"eq.{row_id}"), ("limit", "1")]
        )
        return rows[0] if rows else None

    async def line_items_matching(
        self,
        user_id: str,
        term: str,
        limit: int,
        *,
        date_range: DateRange | None = None,
        amount_range: AmountRange | None = None,
    ) -> list[Row]:
        params = [
            ("select", LINE_ITEM_COLUMNS),
            ("description", f"ilike.{_pattern(term)}"),
            ("receipts.user_id", f"eq.{user_id}"),
            ("order", "id.desc"),
            ("limit", str(limit)),
        ]
        if date_range is not None:
            params.append(("receipts.date", f"gte.{date_range.start.isoformat()}"))
            params.append(("receipts.date", f"lte.{date_range.end.isoformat()}"))
        if amount_range is not None:
            if amount_range.min is not None:
                params.append(("amount", f"gte.{amount_range.min}"))
            if amount_range.max is not None:
                params.append(("amount", f"lte.{amount_range.max}"))
        return await self._select("line_items", params)

    async def line_items_by_ids(self, ids: list[str]) -> list[Row]:
        if not ids:
            return []
        return await self._select(
            "line_items",
            [("select", LINE_ITEM_COLUMNS), ("id", f"in.({','.join(ids)})")],
        )

    async def embeddings_text_search(self, user_id: str, text: str, limit: int) -> list[Row]:
        return await self._select(
            "unified_embeddings",
            [
                ("select", "id,source_id,source_type,content_type,content_text,metadata,created_at"),
                ("source_type", "eq.receipt"),
                ("user_id", f"eq.{user_id}"),
                ("content_text", f"ilike.{_pattern(text)}"),
                ("limit", str(limit)),
            ],
        )

    async def text_search_receipts(
        self, user_id: str, term: str, limit: int, amount_range: AmountRange | None = None
    ) -> list[Row]:
        like = _pattern(term)
        params = [
            ("select", "id,merchant,total,currency,date,status,predicted_category,fullText,created_at"),
            ("user_id", f"eq.{user_id}"),
            ("or", f"(merchant.ilike.{like},fullText.ilike.{like})"),
            ("order", "created_at.desc"),
            ("limit", str(limit)),
        ]
        if amount_range is not None:
            if amount_range.min is not None:
                params.append(("total", f"gte.{amount_range.min}"))
            if amount_range.max is not None:
                params.append(("total", f"lte.{amount_range.max}"))
        return await self._select("receipts", params)

    async def text_search_business_directory(self, term: str, limit: int) -> list[Row]:
        like = _pattern(term)
        return await self._select(
            "malaysian_business_directory",
            [
                ("select", "id,business_name,business_name_malay,business_type,state,city,created_at"),
                ("is_active", "eq.true"),
                (
                    "or",
                    f"(business_name.ilike.{like},business_name_malay.ilike.{like},business_type.ilike.{like})",
                ),
                ("limit", str(limit)),
            ],
        )

    async def text_search_claims(self, team_id: str, term: str, limit: int) -> list[Row]:
        like = _pattern(term)
        return await self._select(
            "claims",
            [
                ("select", "id,title,description,status,priority,amount,currency,created_at"),
                ("team_id", f"eq.{team_id}"),
                ("or", f"(title.ilike.{like},description.ilike.{like})"),
                ("order", "created_at.desc"),
                ("limit", str(limit)),
            ],
        )

    async def text_search_custom_categories(self, user_id: str, term: str, limit: int) -> list[Row]:
        return await self._select(
            "custom_categories",
            [
                ("select", "id,name,color,icon,created_at"),
                ("user_id", f"eq.{user_id}"),
                ("name", f"ilike.{_pattern(term)}"),
                ("limit", str(limit)),
            ],
        )
