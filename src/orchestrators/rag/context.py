"""Per-request pipeline state, stage results and the wall-clock budget."""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, TypeVar

from src.contracts.rag_search_v1 import Filters, Identity, SearchMetadata, SearchRequest
from src.orchestrators.rag.constants import BudgetCheckpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """Uniform return value of every pipeline stage."""

    success: bool
    data: T | None = None
    error: str | None = None
    processing_ms: float = 0.0


class TimeBudget:
    """Soft wall-clock budget. Checked at stage boundaries only."""

    def __init__(self, total_seconds: float, started: float | None = None):
        self.total_seconds = total_seconds
        self.started = time.monotonic() if started is None else started

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def fraction_used(self) -> float:
        if self.total_seconds <= 0:
            return 1.0
        return self.elapsed() / self.total_seconds

    def exceeded(self, checkpoint: BudgetCheckpoint) -> bool:
        return self.fraction_used() > checkpoint.max_fraction

    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.elapsed())

    def seconds_until(self, checkpoint: BudgetCheckpoint) -> float:
        return max(0.0, checkpoint.max_fraction * self.total_seconds - self.elapsed())


@dataclass
class PipelineContext:
    """Everything one request owns. Threaded explicitly through every stage."""

    request: SearchRequest
    identity: Identity
    budget: TimeBudget
    metadata: SearchMetadata
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    preprocess: Any = None
    temporal: Any = None
    effective_limit: int = 0
    now: datetime | None = None
    # Request filters merged with what the parser found; explicit values win.
    filters: Filters | None = None

    @classmethod
    def create(
        cls,
        request: SearchRequest,
        identity: Identity,
        budget_seconds: float,
        started: float | None = None,
        now: datetime | None = None,
    ) -> "PipelineContext":
        return cls(
            request=request,
            identity=identity,
            budget=TimeBudget(budget_seconds, started),
            metadata=SearchMetadata(query=request.query),
            effective_limit=request.limit,
            now=now,
            filters=request.filters,
        )

    @property
    def user_id(self) -> str:
        return self.identity.user_id or ""

    @property
    def today(self) -> date:
        return (self.now or datetime.now()).date()

    @property
    def team_id(self) -> str | None:
        return self.active_filters.team_id or self.identity.team_id

    @property
    def active_filters(self) -> Filters:
        return self.filters if self.filters is not None else self.request.filters


def _discard_late_result(task: asyncio.Task) -> None:
    # Retrieve the outcome so an abandoned task never logs "exception was never retrieved".
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned call finished late with %s: %s", type(exc).__name__, exc)


async def with_timeout(awaitable: Awaitable[T], seconds: float, label: str) -> T:
    """Race an awaitable against a timer.

    On timeout the underlying task is left running and its eventual result is
    dropped; raises TimeoutError to the caller.
    """
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=seconds)
    if task in done:
        return task.result()
    task.add_done_callback(_discard_late_result)
    raise TimeoutError(f"{label} timed out after {seconds:.0f}s")
