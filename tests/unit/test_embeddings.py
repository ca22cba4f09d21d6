import asyncio
import math

import pytest
from hypothesis import given
from hypothesis import strategies as st

from src.llm.embedding_client import EmbeddingClient
from src.llm.provider_errors import ProviderUnavailableError
from src.orchestrators.rag.embeddings import EmbeddingGenerator, reconcile_dimension
from src.orchestrators.rag.errors import EmbeddingError
from tests.unit.fakes import GATEWAY_PAGE, FakeEmbeddingProvider, static_http_client

components = st.floats(min_value=-10, max_value=10, allow_nan=False).filter(lambda x: abs(x) > 1e-3)


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(x * x for x in vector))


@pytest.mark.property
@given(
    vector=st.lists(components, min_size=1, max_size=64),
    target=st.sampled_from([8, 16, 32, 48, 64]),
)
def test_reconciled_vector_has_target_size_and_scaled_norm(vector: list[float], target: int):
    out = reconcile_dimension(vector, target)

    assert len(out) == target
    expected = _norm(vector) * math.sqrt(target / len(vector))
    assert math.isclose(_norm(out), expected, rel_tol=1e-6, abs_tol=1e-9)


def test_same_size_is_unchanged():
    assert reconcile_dimension([0.1, 0.2], 2) == [0.1, 0.2]


def test_half_size_is_duplicated():
    assert reconcile_dimension([1.0, 2.0], 4) == [1.0, 2.0, 1.0, 2.0]


def test_smaller_size_is_padded_with_zeros():
    out = reconcile_dimension([3.0, 4.0], 8)

    assert out[2:] == [0.0] * 6
    assert out[0] == pytest.approx(6.0)


def test_empty_vector_is_an_error():
    with pytest.raises(EmbeddingError):
        reconcile_dimension([], 8)


@pytest.mark.asyncio
async def test_generator_reconciles_provider_output():
    generator = EmbeddingGenerator(FakeEmbeddingProvider(dimensions=4), dimensions=8)

    vector = await generator.generate("nasi lemak")

    assert len(vector) == 8


@pytest.mark.asyncio
async def test_generator_wraps_provider_errors():
    provider = FakeEmbeddingProvider(error=ProviderUnavailableError("down"))
    generator = EmbeddingGenerator(provider, dimensions=8)

    with pytest.raises(EmbeddingError):
        await generator.generate("nasi lemak")


@pytest.mark.asyncio
async def test_generator_rejects_blank_text():
    generator = EmbeddingGenerator(FakeEmbeddingProvider(), dimensions=8)

    with pytest.raises(EmbeddingError):
        await generator.generate("   ")


@pytest.mark.asyncio
async def test_generator_rejects_non_finite_values():
    class NanProvider:
        async def embed(self, text: str) -> list[float]:
            return [float("nan")] * 8

    generator = EmbeddingGenerator(NanProvider(), dimensions=8)

    with pytest.raises(EmbeddingError):
        await generator.generate("nasi lemak")


@pytest.mark.asyncio
async def test_gateway_page_becomes_embedding_error():
    client = EmbeddingClient(base_url="http://embed.local", model="test-embed", api_key="k")
    client.client = static_http_client(text=GATEWAY_PAGE)
    generator = EmbeddingGenerator(client, dimensions=8)

    with pytest.raises(EmbeddingError):
        await generator.generate("coffee")
    await client.close()


@pytest.mark.asyncio
async def test_unexpected_provider_errors_become_embedding_error():
    generator = EmbeddingGenerator(FakeEmbeddingProvider(error=KeyError("data")), dimensions=8)

    with pytest.raises(EmbeddingError):
        await generator.generate("coffee")


class SlowProvider:
    def __init__(self, delay: float):
        self.delay = delay

    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(self.delay)
        return [0.1] * 8


@pytest.mark.asyncio
async def test_slow_provider_times_out():
    generator = EmbeddingGenerator(SlowProvider(0.5), dimensions=8, timeout_seconds=0.05)

    with pytest.raises(EmbeddingError, match="timed out"):
        await generator.generate("coffee")


@pytest.mark.asyncio
async def test_caller_limit_only_tightens_the_timeout():
    generator = EmbeddingGenerator(SlowProvider(0.2), dimensions=8, timeout_seconds=5)

    with pytest.raises(EmbeddingError):
        await generator.generate("coffee", timeout_seconds=0.05)
    assert len(await generator.generate("coffee", timeout_seconds=30)) == 8
