"""Observability: LangSmith tracing (optional, env-controlled)."""

from src.observability.langsmith import (
    flush,
    get_client,
    stage_trace,
    trace,
    traceable,
    tracing_enabled,
)

__all__ = ["trace", "traceable", "stage_trace", "tracing_enabled", "flush", "get_client"]
