"""Day-by-day replay of historical pool events against a strategy."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Generic, Optional, Union, assert_never

from ..config.settings import BacktestConfig, get_app_config
from ..datalake.schemas import EventType, LiquidityEvent, PoolEvent, SwapEvent
from ..datalake.storage import EventStore
from ..execution.engine import DryRunEngine
from ..execution.ledger import AccountLedger, LedgerSnapshot
from ..execution.pool import CorePool, PoolFactory, PoolView, build_pool
from ..ingestion.event_merger import EventMerger
from ..monitoring.logger import get_logger, run_scope
from ..monitoring.metrics import METRICS
from .base import Phase, RunContext, StateT, Strategy

DateLike = Union[date, datetime]


@dataclass(slots=True)
class BacktestResult:
    """Outcome of a finished replay."""

    run_id: str
    start: datetime
    end: datetime
    days_replayed: int
    events_replayed: int
    checkpoints: int
    ledger: LedgerSnapshot
    evaluation: Any


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


class Backtester(Generic[StateT]):
    """Drives a strategy through every event between two dates.

    Each day runs the AFTER_NEW_DAY hooks and then applies the day's events
    in replay order, running the AFTER_EVENT_APPLIED hooks after each one.
    ``evaluate`` runs once after the last day; the pool and the event store
    are released afterwards, or by :meth:`shutdown` on any failure path.
    """

    def __init__(
        self,
        strategy: Strategy[StateT],
        event_store: EventStore,
        pool: CorePool,
        ledger: AccountLedger,
        *,
        config: Optional[BacktestConfig] = None,
        merger: Optional[EventMerger] = None,
    ) -> None:
        self._strategy = strategy
        self._store = event_store
        self._pool = pool
        self._config = config or get_app_config().backtest
        self._engine = DryRunEngine(pool, ledger)
        self._merger = merger or EventMerger(event_store)
        self._logger = get_logger(__name__)
        self._started = False
        self._closed = False

    @classmethod
    async def create(
        cls,
        strategy: Strategy[StateT],
        event_store: EventStore,
        pool_factory: PoolFactory,
        *,
        config: Optional[BacktestConfig] = None,
    ) -> "Backtester[StateT]":
        """Build the pool from the store's pool config and seed the ledger from ``config``."""

        backtest_config = config or get_app_config().backtest
        pool_config = await event_store.get_pool_config()
        pool = await build_pool(pool_factory, pool_config)
        ledger = AccountLedger(
            backtest_config.initial_token0,
            backtest_config.initial_token1,
            token0=pool_config.token0,
            token1=pool_config.token1,
        )
        return cls(strategy, event_store, pool, ledger, config=backtest_config)

    @property
    def engine(self) -> DryRunEngine:
        return self._engine

    async def __aenter__(self) -> "Backtester[StateT]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def run(
        self,
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
        *,
        run_id: Optional[str] = None,
    ) -> BacktestResult:
        if self._started or self._closed:
            raise RuntimeError("Backtester instances replay exactly once")
        cursor = _as_datetime(start if start is not None else self._config.start_date)
        stop = _as_datetime(end if end is not None else self._config.end_date)
        if stop < cursor:
            raise ValueError("end must not precede start")
        self._started = True

        with run_scope(run_id) as scope_id:
            self._logger.info(
                "Starting backtest %s",
                self._strategy.name,
                extra={"start": cursor.isoformat(), "end": stop.isoformat()},
            )
            try:
                result = await self._replay(scope_id, cursor, stop)
            except BaseException:
                try:
                    await self.shutdown()
                except Exception as close_exc:
                    self._logger.error("Release after failed run also failed: %s", close_exc)
                raise
            await self.shutdown()
            self._logger.info(
                "Backtest finished",
                extra={"days": result.days_replayed, "events": result.events_replayed,
                       "checkpoints": result.checkpoints,
                       "balance0": result.ledger.balance0, "balance1": result.ledger.balance1},
            )
            return result

    async def _replay(self, run_id: str, start: datetime, stop: datetime) -> BacktestResult:
        await self._pool.initialize(await self._store.get_initial_sqrt_price_x96())
        context: RunContext[StateT] = RunContext(
            ledger=self._engine.ledger,
            state=self._strategy.create_state(),
        )
        context.refresh(self._pool.get_view())

        days = events = checkpoints = 0
        cursor = start
        while cursor < stop:
            day_events, day_checkpoints = await self._replay_day(cursor, context)
            days += 1
            events += day_events
            checkpoints += day_checkpoints
            cursor += timedelta(days=1)

        evaluation = self._strategy.evaluate(self._pool.get_view(), context)
        if inspect.isawaitable(evaluation):
            evaluation = await evaluation
        return BacktestResult(
            run_id=run_id,
            start=start,
            end=stop,
            days_replayed=days,
            events_replayed=events,
            checkpoints=checkpoints,
            ledger=self._engine.ledger.snapshot(),
            evaluation=evaluation,
        )

    async def shutdown(self) -> None:
        """Release the pool and the event store; safe to call repeatedly."""

        if self._closed:
            return
        self._closed = True
        first_error: Optional[BaseException] = None
        try:
            await self._pool.shutdown()
        except Exception as exc:
            first_error = exc
            self._logger.error("Pool shutdown failed: %s", exc)
        try:
            await self._store.close()
        except Exception as exc:
            self._logger.error("Event store close failed: %s", exc)
            if first_error is None:
                first_error = exc
        if first_error is not None:
            raise first_error

    async def _replay_day(self, day: datetime, context: RunContext[StateT]) -> tuple[int, int]:
        self._logger.info("Replaying %s", day.date().isoformat())
        checkpoints = 0
        with METRICS.timed("replay.day_seconds"):
            context.current_date = day.date()
            await self._run_hooks(Phase.AFTER_NEW_DAY, context)

            events = await self._merger.events_between(day, day + timedelta(days=1))
            interval = self._config.checkpoint_interval
            for index, event in enumerate(events):
                if index % interval == 0:
                    self._pool.take_snapshot(f"{day.date().isoformat()}#{index}")
                    checkpoints += 1
                    METRICS.increment("replay.checkpoints")
                await self._apply(event)
                context.refresh(self._pool.get_view(), event)
                await self._run_hooks(Phase.AFTER_EVENT_APPLIED, context)
        METRICS.increment("replay.days")
        ledger = context.ledger
        for token in (ledger.token0, ledger.token1):
            METRICS.gauge(f"ledger.balance.{token}", ledger.balance_of(token))
        return len(events), checkpoints

    async def _apply(self, event: PoolEvent) -> None:
        user = self._config.system_user
        match event:
            case LiquidityEvent():
                if event.type is EventType.MINT:
                    await self._pool.mint(user, event.tick_lower, event.tick_upper, event.liquidity)
                else:
                    await self._pool.burn(user, event.tick_lower, event.tick_upper, event.liquidity)
            case SwapEvent():
                await self._pool.swap(event.zero_for_one, event.amount_specified)
            case _:
                assert_never(event)
        METRICS.increment(f"replay.events.{event.type.name.lower()}")

    async def _run_hooks(self, phase: Phase, context: RunContext[StateT]) -> None:
        view: PoolView = self._pool.get_view()
        self._strategy.cache(phase, view, context)
        METRICS.increment(f"hooks.{phase.value}.cache")
        if self._strategy.trigger(phase, view, context):
            METRICS.increment(f"hooks.{phase.value}.act")
            await self._strategy.act(phase, self._engine, view, context)


__all__ = ["Backtester", "BacktestResult"]
