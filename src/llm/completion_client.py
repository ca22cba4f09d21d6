"""Completion provider client: OpenAI-compatible chat completions over httpx."""

import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from src.core.config import config
from src.core.logger import logger
from src.llm.provider_errors import MalformedResponseError, decode_json_body
from src.observability import trace


class CompletionProvider(Protocol):
    async def complete(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 1000
    ) -> str: ...


@dataclass
class LLMResponse:
    text: str
    model: str
    tokens_used: int = 0


def _choice_text(data: dict) -> tuple[str, int]:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise MalformedResponseError("Completion response has no choices")
    message = choices[0].get("message") or {}
    if not isinstance(message, dict):
        raise MalformedResponseError("Completion choice has no message object")
    content = message.get("content") or ""
    if not isinstance(content, str):
        raise MalformedResponseError("Completion message content is not text")
    usage = data.get("usage")
    tokens = usage.get("total_tokens", 0) if isinstance(usage, dict) else 0
    return content, tokens if isinstance(tokens, int) else 0


class CompletionClient:
    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
    ):
        self.base_url = (base_url or config.llm_url).rstrip("/")
        self.model = model or config.llm_model
        self.api_key = (api_key if api_key is not None else config.llm_api_key).strip()
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 1000,
        temperature: float = 0.2,
    ) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        started = time.monotonic()
        async with trace(
            "completion_generate",
            "llm",
            inputs={
                "model": self.model,
                "prompt_preview": prompt[-500:] if len(prompt) > 500 else prompt,
            },
            metadata={"provider": "completion"},
        ) as run:
            try:
                response = await self.client.post(
                    f"{self.base_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                data = decode_json_body(response)
                text, tokens_used = _choice_text(data)
                logger.external_call(
                    "completion", self.model, time.monotonic() - started
                )
                run.end(outputs={"text_preview": text[:500], "tokens_used": tokens_used})
                return LLMResponse(
                    text=text,
                    model=data.get("model") or self.model,
                    tokens_used=tokens_used,
                )
            except httpx.HTTPStatusError as e:
                body = getattr(e.response, "text", None) or ""
                logger.external_call(
                    "completion", self.model, time.monotonic() - started, ok=False
                )
                logger.error(
                    f"Completion request failed {e.response.status_code}: {body[:500]}"
                )
                raise
            except httpx.HTTPError as e:
                logger.external_call(
                    "completion", self.model, time.monotonic() - started, ok=False
                )
                logger.error("Completion request failed", exception=e)
                raise
            except MalformedResponseError as e:
                logger.external_call(
                    "completion", self.model, time.monotonic() - started, ok=False
                )
                logger.error(f"Completion response unusable: {e}")
                raise

    async def complete(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 1000
    ) -> str:
        response = await self.generate(
            prompt, max_tokens=max_tokens, temperature=temperature
        )
        return response.text

    async def close(self):
        await self.client.aclose()


def create_completion_client() -> CompletionClient | None:
    """Configured client, or None when no provider is set up (pipeline runs degraded)."""
    if not config.llm_url or not config.llm_api_key:
        return None
    return CompletionClient()
