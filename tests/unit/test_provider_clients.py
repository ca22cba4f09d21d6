import httpx
import pytest

from src.llm.completion_client import CompletionClient
from src.llm.embedding_client import EmbeddingClient
from src.llm.provider_errors import MalformedResponseError, decode_json_body, is_transient
from tests.unit.fakes import GATEWAY_PAGE, static_http_client


def _completion_client(http: httpx.AsyncClient) -> CompletionClient:
    client = CompletionClient(base_url="http://llm.local", model="test-model", api_key="k")
    client.client = http
    return client


def _embedding_client(http: httpx.AsyncClient) -> EmbeddingClient:
    client = EmbeddingClient(base_url="http://embed.local", model="test-embed", api_key="k")
    client.client = http
    return client


class TestDecodeJsonBody:
    def test_html_page_is_malformed(self):
        response = httpx.Response(200, text=GATEWAY_PAGE)

        with pytest.raises(MalformedResponseError):
            decode_json_body(response)

    def test_list_body_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            decode_json_body(httpx.Response(200, json=[{"choices": []}]))

    def test_object_is_returned(self):
        assert decode_json_body(httpx.Response(200, json={"ok": True})) == {"ok": True}

    def test_malformed_bodies_are_retried(self):
        assert is_transient(MalformedResponseError("gateway page"))


class TestCompletionClient:
    @pytest.mark.asyncio
    async def test_reads_first_choice(self):
        client = _completion_client(
            static_http_client(
                json={
                    "model": "served-model",
                    "choices": [{"message": {"content": '{"intent": "general_search"}'}}],
                    "usage": {"total_tokens": 42},
                }
            )
        )

        response = await client.generate("expand: grab rides")
        await client.close()

        assert response.text == '{"intent": "general_search"}'
        assert response.model == "served-model"
        assert response.tokens_used == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "http",
        [
            lambda: static_http_client(text=GATEWAY_PAGE),
            lambda: static_http_client(json=["not", "an", "object"]),
            lambda: static_http_client(json={"choices": "none"}),
            lambda: static_http_client(json={"choices": [{"message": {"content": 7}}]}),
        ],
        ids=["html", "list", "choices-not-list", "content-not-text"],
    )
    async def test_unusable_bodies_raise_provider_errors(self, http):
        client = _completion_client(http())

        with pytest.raises(MalformedResponseError):
            await client.complete("expand: grab rides")
        await client.close()

    @pytest.mark.asyncio
    async def test_status_errors_still_propagate(self):
        client = _completion_client(static_http_client(status=503, text="overloaded"))

        with pytest.raises(httpx.HTTPStatusError):
            await client.complete("expand: grab rides")
        await client.close()


class TestEmbeddingClient:
    @pytest.mark.asyncio
    async def test_reads_first_vector(self):
        client = _embedding_client(static_http_client(json={"data": [{"embedding": [0.1, 0.2]}]}))

        assert await client.embed("coffee") == [0.1, 0.2]
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "http",
        [
            lambda: static_http_client(text=GATEWAY_PAGE),
            lambda: static_http_client(json={"data": []}),
            lambda: static_http_client(json={"data": [{"embedding": None}]}),
        ],
        ids=["html", "no-rows", "no-vector"],
    )
    async def test_unusable_bodies_raise_provider_errors(self, http):
        client = _embedding_client(http())

        with pytest.raises(MalformedResponseError):
            await client.embed("coffee")
        await client.close()
