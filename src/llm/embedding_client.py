"""Embedding provider client: OpenAI-compatible /v1/embeddings over httpx."""

import time
from typing import Protocol

import httpx

from src.core.config import config
from src.core.logger import logger
from src.llm.provider_errors import MalformedResponseError, decode_json_body
from src.observability import trace


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def _first_embedding(data: dict) -> list[float]:
    rows = data.get("data")
    if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
        raise MalformedResponseError("Embedding response has no data rows")
    vector = rows[0].get("embedding")
    if not isinstance(vector, list):
        raise MalformedResponseError("Embedding row carries no vector")
    return vector


class EmbeddingClient:
    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = 20.0,
    ):
        self.base_url = (base_url or config.embedding_url).rstrip("/")
        self.model = model or config.embedding_model
        self.api_key = (api_key if api_key is not None else config.embedding_api_key).strip()
        self.client = httpx.AsyncClient(timeout=timeout)

    async def embed(self, text: str) -> list[float]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        started = time.monotonic()
        async with trace(
            "embedding_create",
            "embedding",
            inputs={"model": self.model, "text_preview": text[:200]},
            metadata={"provider": "embedding"},
        ) as run:
            try:
                response = await self.client.post(
                    f"{self.base_url}/v1/embeddings",
                    json={"model": self.model, "input": text},
                    headers=headers,
                )
                response.raise_for_status()
                vector = _first_embedding(decode_json_body(response))
            except (httpx.HTTPError, MalformedResponseError) as e:
                logger.external_call(
                    "embedding", self.model, time.monotonic() - started, ok=False
                )
                logger.error("Embedding request failed", exception=e)
                raise
            logger.external_call("embedding", self.model, time.monotonic() - started)
            run.end(outputs={"dimensions": len(vector)})
            return vector

    async def close(self):
        await self.client.aclose()
