"""Stage 2: query embedding with dimension reconciliation.

The store holds D-dimensional vectors. Providers may return another size;
every reshaping path keeps the per-component scale, so a d-dimensional input
of norm n always comes out with norm n * sqrt(D / d), the norm a native
D-dimensional vector with the same component distribution would have.
"""

import math
import time

import httpx

from src.core.config import config
from src.core.logger import logger
from src.llm.embedding_client import EmbeddingProvider
from src.llm.provider_errors import ProviderError
from src.observability import traceable
from src.orchestrators.rag.context import with_timeout
from src.orchestrators.rag.errors import EmbeddingError


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(x * x for x in vector))


def reconcile_dimension(vector: list[float], target: int) -> list[float]:
    """Map a provider vector onto `target` dimensions.

    - d == target: unchanged.
    - 2d == target: each component duplicated in place (concatenation).
    - d < target: zero-padded, non-zero components rescaled by sqrt(target/d).
    - d > target: truncated, then rescaled to norm * sqrt(target/d).
    """
    size = len(vector)
    if size == 0:
        raise EmbeddingError("Provider returned an empty embedding")
    if size == target:
        return list(vector)
    if size * 2 == target:
        return list(vector) + list(vector)
    if size < target:
        scale = math.sqrt(target / size)
        return [x * scale for x in vector] + [0.0] * (target - size)

    expected = _norm(vector) * math.sqrt(target / size)
    truncated = list(vector[:target])
    current = _norm(truncated)
    if current == 0.0:
        return truncated
    factor = expected / current
    return [x * factor for x in truncated]


def _validate(vector: object) -> list[float]:
    if not isinstance(vector, list) or not vector:
        raise EmbeddingError("Provider returned an empty embedding")
    try:
        values = [float(x) for x in vector]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Provider returned a non-numeric embedding: {e}") from e
    if not all(math.isfinite(x) for x in values):
        raise EmbeddingError("Provider returned a non-finite embedding")
    return values


class EmbeddingGenerator:
    def __init__(
        self,
        provider: EmbeddingProvider,
        dimensions: int | None = None,
        timeout_seconds: float | None = None,
    ):
        self._provider = provider
        self.dimensions = dimensions or config.embedding_dimensions
        self.timeout = timeout_seconds or config.embedding_timeout_seconds

    @traceable(name="rag_embed", run_type="embedding")
    async def generate(self, text: str, *, timeout_seconds: float | None = None) -> list[float]:
        """Embed `text` at the store's dimensionality.

        `timeout_seconds` tightens the configured timeout, never loosens it.
        Every provider failure surfaces as EmbeddingError.
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        limit = self.timeout if timeout_seconds is None else min(self.timeout, timeout_seconds)
        started = time.monotonic()
        try:
            raw = await with_timeout(self._provider.embed(text), limit, "Embedding")
        except TimeoutError as e:
            logger.error(f"Embedding provider gave no answer within {limit:.1f}s")
            raise EmbeddingError(str(e)) from e
        except (ProviderError, httpx.HTTPError) as e:
            logger.error("Embedding provider failed", exception=e)
            raise EmbeddingError(f"Embedding provider failed: {e}") from e
        except Exception as e:
            logger.error("Embedding provider raised unexpectedly", exception=e)
            raise EmbeddingError(f"Embedding provider failed: {e!r}") from e
        values = _validate(raw)
        if len(values) != self.dimensions:
            logger.debug(
                f"Reconciling embedding dimensions {len(values)} -> {self.dimensions}"
            )
        vector = reconcile_dimension(values, self.dimensions)
        logger.debug(f"Embedding ready in {(time.monotonic() - started) * 1000:.0f}ms")
        return vector
