"""Request validation: raw caller payload -> SearchRequest, before any I/O."""

import re
from typing import Any

import pydantic

from src.contracts.rag_search_v1 import SearchRequest
from src.orchestrators.rag.errors import ValidationError

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_keys(value: Any) -> Any:
    """Accept camelCase payloads (contentTypes, dateRange, teamId) as well as snake_case."""
    if isinstance(value, dict):
        return {_CAMEL.sub("_", str(k)).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def _describe(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = str(error.get("msg", "invalid value"))
    # pydantic prefixes custom validator messages with "Value error, ".
    message = message.removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


def validate_request(raw: SearchRequest | dict[str, Any]) -> SearchRequest:
    """Raise ValidationError listing every problem found in the payload."""
    if isinstance(raw, SearchRequest):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(["request body must be an object"])
    try:
        return SearchRequest.model_validate(_snake_keys(raw))
    except pydantic.ValidationError as e:
        raise ValidationError([_describe(err) for err in e.errors()]) from e
