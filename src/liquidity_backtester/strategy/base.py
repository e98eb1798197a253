"""Strategy interfaces and the run-scoped context handed to every hook."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, TypeVar, Union

from ..datalake.schemas import PoolEvent
from ..execution.engine import Engine
from ..execution.ledger import LedgerView
from ..execution.pool import PoolView

StateT = TypeVar("StateT")


class Phase(Enum):
    """Points in the replay loop at which hooks run."""

    AFTER_NEW_DAY = "after_new_day"
    AFTER_EVENT_APPLIED = "after_event_applied"


@dataclass(slots=True)
class RunContext(Generic[StateT]):
    """Shared state for one backtest run, refreshed by the driver."""

    ledger: LedgerView
    state: StateT
    sqrt_price_x96: int = 0
    tick_current: int = 0
    current_date: Optional[date] = None
    current_event: Optional[PoolEvent] = None

    def refresh(self, view: PoolView, event: Optional[PoolEvent] = None) -> None:
        if event is not None:
            self.current_event = event
        self.sqrt_price_x96 = view.sqrt_price_x96
        self.tick_current = view.tick_current


class Strategy(Protocol[StateT]):
    """Hooks a strategy provides to the replay driver."""

    name: str

    def create_state(self) -> StateT:
        """Build the companion object stored on ``RunContext.state``."""

    def trigger(self, phase: Phase, pool: PoolView, context: RunContext[StateT]) -> bool:
        """Decide whether ``act`` runs at this phase point."""

    def cache(self, phase: Phase, pool: PoolView, context: RunContext[StateT]) -> None:
        """Accumulate rolling state; called at every phase point."""

    async def act(
        self,
        phase: Phase,
        engine: Engine,
        pool: PoolView,
        context: RunContext[StateT],
    ) -> None:
        """Trade through the engine."""

    def evaluate(self, pool: PoolView, context: RunContext[StateT]) -> Any:
        """Summarise the run once the last day has been replayed."""


TriggerHook = Callable[[Phase, PoolView, RunContext[Any]], bool]
CacheHook = Callable[[Phase, PoolView, RunContext[Any]], None]
ActHook = Callable[[Phase, Engine, PoolView, RunContext[Any]], Union[Awaitable[None], None]]
EvaluateHook = Callable[[PoolView, RunContext[Any]], Any]


def _never(phase: Phase, pool: PoolView, context: RunContext[Any]) -> bool:
    return False


def _noop(*_: Any) -> None:
    return None


@dataclass(slots=True)
class HookSet:
    """Strategy assembled from plain callables.

    ``act`` may be a coroutine function or a plain function. Without a
    ``state_factory`` the context state is a fresh ``dict``.
    """

    trigger_hook: TriggerHook = _never
    cache_hook: CacheHook = _noop
    act_hook: ActHook = _noop
    evaluate_hook: EvaluateHook = _noop
    state_factory: Callable[[], Any] = dict
    name: str = field(default="hooks")

    def create_state(self) -> Any:
        return self.state_factory()

    def trigger(self, phase: Phase, pool: PoolView, context: RunContext[Any]) -> bool:
        return bool(self.trigger_hook(phase, pool, context))

    def cache(self, phase: Phase, pool: PoolView, context: RunContext[Any]) -> None:
        self.cache_hook(phase, pool, context)

    async def act(self, phase: Phase, engine: Engine, pool: PoolView, context: RunContext[Any]) -> None:
        outcome = self.act_hook(phase, engine, pool, context)
        if inspect.isawaitable(outcome):
            await outcome

    def evaluate(self, pool: PoolView, context: RunContext[Any]) -> Any:
        return self.evaluate_hook(pool, context)


__all__ = ["HookSet", "Phase", "RunContext", "StateT", "Strategy"]
