"""Ordered retrieval strategies and the driver that runs them.

Each strategy is an async callable `(ctx) -> StrategyOutcome`. The driver
tries them in order and stops at the first one that produces results; a
strategy that raises RetrievalError or TimeoutError is recorded and skipped.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from src.contracts.rag_search_v1 import UnifiedSearchResult
from src.orchestrators.rag.context import PipelineContext
from src.orchestrators.rag.errors import RetrievalError

logger = logging.getLogger(__name__)


@dataclass
class StrategyOutcome:
    results: list[UnifiedSearchResult]
    search_method: str
    notes: dict[str, Any] = field(default_factory=dict)


StrategyFn = Callable[[PipelineContext], Awaitable[StrategyOutcome]]


@dataclass(frozen=True)
class NamedStrategy:
    name: str
    run: StrategyFn
    # An empty result from this strategy is final (no later strategy runs).
    accept_empty: bool = False


@dataclass
class ChainResult:
    outcome: StrategyOutcome | None
    tried: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def results(self) -> list[UnifiedSearchResult]:
        return self.outcome.results if self.outcome else []


async def run_strategy_chain(ctx: PipelineContext, strategies: list[NamedStrategy]) -> ChainResult:
    """Run strategies in order until one returns results.

    The last empty outcome is kept so callers can still report which method
    ran. Raises RetrievalError only when every strategy failed with an error.
    """
    chain = ChainResult(outcome=None)
    for strategy in strategies:
        chain.tried.append(strategy.name)
        try:
            outcome = await strategy.run(ctx)
        except (RetrievalError, TimeoutError) as e:
            logger.warning("Strategy %s failed: %s", strategy.name, e)
            chain.errors[strategy.name] = str(e)
            continue
        chain.outcome = outcome
        if outcome.results or strategy.accept_empty:
            return chain
    if chain.outcome is None and chain.errors:
        failed = ", ".join(f"{k}: {v}" for k, v in chain.errors.items())
        raise RetrievalError(f"All retrieval strategies failed ({failed})")
    return chain
