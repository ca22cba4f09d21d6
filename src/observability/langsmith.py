"""LangSmith tracing for pipeline stages, provider calls and retrieval.

Everything here degrades to a no-op unless LANGSMITH_TRACING=true and the
langsmith package is importable. Traced inputs are compacted first: query
embeddings and raw content never leave the process in full.
"""

from __future__ import annotations

import atexit
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Literal, cast

if TYPE_CHECKING:
    from langsmith import Client as LangSmithClient

_ENABLED = os.getenv("LANGSMITH_TRACING", "").strip().lower() == "true"
_PROJECT = os.getenv("LANGSMITH_PROJECT", "receipt-rag")
_MAX_TEXT = 500

RunType = Literal["tool", "chain", "llm", "retriever", "embedding", "prompt", "parser"]


def _compact_value(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_TEXT:
        return value[:_MAX_TEXT] + f"... ({len(value)} chars)"
    if isinstance(value, list) and len(value) > 16 and all(isinstance(v, float) for v in value[:16]):
        return f"<vector dim={len(value)}>"
    if isinstance(value, dict):
        return {k: _compact_value(v) for k, v in value.items()}
    return value


def compact_inputs(inputs: dict[str, Any] | None) -> dict[str, Any]:
    """Replace embedding vectors with their dimension and clip long text."""
    return {k: _compact_value(v) for k, v in (inputs or {}).items()}


class _NoOpTrace:
    """Stands in for both the trace context and the run it yields."""

    def end(self, outputs: dict[str, Any] | None = None) -> None:
        pass

    def add_metadata(self, metadata: dict[str, Any]) -> None:
        pass

    def __enter__(self) -> _NoOpTrace:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    async def __aenter__(self) -> _NoOpTrace:
        return self

    async def __aexit__(self, *args: Any) -> None:
        pass


def _noop_trace(name: str, run_type: str = "chain", **kwargs: Any) -> _NoOpTrace:
    return _NoOpTrace()


def _noop_traceable(
    name: str | None = None, run_type: str = "chain", **kwargs: Any
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return lambda fn: fn


def _noop_flush() -> None:
    pass


def _noop_get_client() -> LangSmithClient | None:
    return None


trace = _noop_trace
traceable = _noop_traceable
flush = _noop_flush
get_client = _noop_get_client


def tracing_enabled() -> bool:
    return get_client is not _noop_get_client


def stage_trace(stage: str, request_id: str, **inputs: Any):
    """Trace one pipeline stage, tagged with the owning request."""
    return trace(
        f"rag_{stage}",
        "chain",
        inputs=inputs,
        metadata={"request_id": request_id, "stage": stage},
        tags=["rag", f"stage:{stage}"],
    )


if _ENABLED:
    try:
        from langsmith import Client as LangSmithClient
        from langsmith import traceable as _ls_traceable
        from langsmith.run_helpers import trace as _ls_trace

        _client: LangSmithClient | None = None

        def get_client() -> LangSmithClient | None:
            global _client
            if _client is None:
                _client = LangSmithClient()
            return _client

        def trace(
            name: str,
            run_type: str = "chain",
            *,
            inputs: dict[str, Any] | None = None,
            metadata: dict[str, Any] | None = None,
            project_name: str | None = None,
            **kwargs: Any,
        ):
            return _ls_trace(
                name,
                run_type=cast("RunType", run_type),
                inputs=compact_inputs(inputs),
                metadata=metadata or {},
                project_name=project_name or _PROJECT,
                **kwargs,
            )

        def traceable(name: str | None = None, run_type: str = "chain", **kwargs: Any):
            kwargs.setdefault("project_name", _PROJECT)
            kwargs.setdefault("process_inputs", compact_inputs)
            return _ls_traceable(name=name, run_type=run_type, **kwargs)  # type: ignore[call-overload]

        def flush() -> None:
            c = get_client()
            if c is not None:
                c.flush()

        atexit.register(flush)

    except ImportError:
        pass
