"""Provider error markers that arrive as plain response text.

The completion provider sometimes reports failures inside a 200 response body
instead of through a status code. These markers are matched by substring
before any JSON parsing. This depends on undocumented provider behaviour;
prefer structured error codes if the provider starts returning them.
"""

from typing import Any

import httpx

# Non-transient: retrying the same request will not help.
FATAL_MARKERS: tuple[str, ...] = (
    "RATE_LIMIT_EXCEEDED",
    "QUOTA_EXCEEDED",
    "API_KEY_INVALID",
    "PERMISSION_DENIED",
)

# Transient: the model is overloaded or briefly unavailable.
TRANSIENT_MARKERS: tuple[str, ...] = (
    "OVERLOADED",
    "UNAVAILABLE",
    "INTERNAL_ERROR",
)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class ProviderError(Exception):
    """Completion/embedding provider failure. Message is for logs only."""

    transient = False


class ProviderRateLimitError(ProviderError):
    pass


class ProviderUnavailableError(ProviderError):
    transient = True


class EmptyResponseError(ProviderError):
    transient = True


class MalformedResponseError(ProviderError):
    """200 response whose body is not the JSON shape the provider documents."""

    transient = True


def check_response_text(text: str | None) -> str:
    """Return text unchanged, or raise if it is empty or carries an error marker."""
    if not text or not text.strip():
        raise EmptyResponseError("Empty response from provider")
    for marker in FATAL_MARKERS:
        if marker in text:
            raise ProviderRateLimitError(f"Provider error {marker}: {text[:200]}")
    for marker in TRANSIENT_MARKERS:
        if marker in text:
            raise ProviderUnavailableError(
                f"Provider temporarily unavailable {marker}: {text[:200]}"
            )
    return text


def is_transient(e: BaseException) -> bool:
    if isinstance(e, ProviderError):
        return e.transient
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code in RETRYABLE_STATUS
    return isinstance(e, (httpx.TimeoutException, httpx.TransportError))


def decode_json_body(response: httpx.Response) -> dict[str, Any]:
    """Response body as a JSON object; gateway pages and bare lists are rejected."""
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"Provider returned non-JSON body: {response.text[:200]!r}"
        ) from e
    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"Provider returned {type(data).__name__} instead of an object"
        )
    return data
