from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

import pytest

from liquidity_backtester.config import settings
from liquidity_backtester.datalake.schemas import (
    EventType,
    LiquidityEvent,
    PoolConfig,
    SwapEvent,
)
from liquidity_backtester.execution.errors import PoolOperationError
from liquidity_backtester.execution.pool import OperationResult, Position
from liquidity_backtester.monitoring.metrics import METRICS
from liquidity_backtester.utils.price_math import tick_at_sqrt_ratio

INITIAL_SQRT_PRICE_X96 = 0x43EFEF20F018FDC58E7A5CF0416A
PRICE_STEP = 1 << 80


@dataclass
class _PositionState:
    liquidity: int = 0
    tokens_owed0: int = 0
    tokens_owed1: int = 0


class FakePool:
    """In-memory pool that records calls and returns scripted amounts.

    Unscripted calls answer with simple deterministic amounts: mint takes
    ``(amount, amount // 2)``, swaps take ``amount_specified`` on the input
    side and pay half of it on the output side.
    """

    def __init__(self, config: Optional[PoolConfig] = None, *, shutdown_error: Optional[Exception] = None) -> None:
        self.config = config or PoolConfig(60, "USDC", "WETH", 3000)
        self.sqrt_price_x96 = INITIAL_SQRT_PRICE_X96
        self.tick_current = tick_at_sqrt_ratio(INITIAL_SQRT_PRICE_X96)
        self.liquidity = 0
        self.calls: List[Tuple] = []
        self.snapshots: List[str] = []
        self.step_backs = 0
        self.initialized_with: Optional[int] = None
        self.shutdown_calls = 0
        self.shutdown_error = shutdown_error
        self.scripted: Dict[str, List[OperationResult]] = defaultdict(list)
        self.positions: Dict[Tuple[str, int, int], _PositionState] = defaultdict(_PositionState)

    def script(self, operation: str, *results: OperationResult) -> None:
        self.scripted[operation].extend(results)

    def _scripted_or(self, operation: str, default: OperationResult) -> OperationResult:
        queue = self.scripted.get(operation)
        if queue:
            return queue.pop(0)
        return default

    def _set_price(self, sqrt_price_x96: int) -> None:
        self.sqrt_price_x96 = sqrt_price_x96
        self.tick_current = tick_at_sqrt_ratio(sqrt_price_x96)

    async def initialize(self, sqrt_price_x96: int) -> None:
        self.initialized_with = sqrt_price_x96
        self._set_price(sqrt_price_x96)

    async def mint(self, recipient: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        self.calls.append(("mint", recipient, tick_lower, tick_upper, amount))
        if tick_lower >= tick_upper:
            raise PoolOperationError("TLU")
        self.positions[(recipient, tick_lower, tick_upper)].liquidity += amount
        self.liquidity += amount
        return self._scripted_or("mint", OperationResult(amount, amount // 2))

    async def burn(self, owner: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        self.calls.append(("burn", owner, tick_lower, tick_upper, amount))
        position = self.positions[(owner, tick_lower, tick_upper)]
        if amount > position.liquidity:
            raise PoolOperationError("LS")
        result = self._scripted_or("burn", OperationResult(amount, amount // 2))
        position.liquidity -= amount
        position.tokens_owed0 += result.amount0
        position.tokens_owed1 += result.amount1
        self.liquidity -= amount
        return result

    async def collect(
        self,
        recipient: str,
        tick_lower: int,
        tick_upper: int,
        amount0_requested: int,
        amount1_requested: int,
    ) -> OperationResult:
        self.calls.append(("collect", recipient, tick_lower, tick_upper, amount0_requested, amount1_requested))
        position = self.positions[(recipient, tick_lower, tick_upper)]
        amount0 = min(amount0_requested, position.tokens_owed0)
        amount1 = min(amount1_requested, position.tokens_owed1)
        position.tokens_owed0 -= amount0
        position.tokens_owed1 -= amount1
        return self._scripted_or("collect", OperationResult(amount0, amount1))

    async def swap(
        self,
        zero_for_one: bool,
        amount_specified: int,
        sqrt_price_limit_x96: Optional[int] = None,
    ) -> OperationResult:
        self.calls.append(("swap", zero_for_one, amount_specified, sqrt_price_limit_x96))
        if zero_for_one:
            default = OperationResult(amount_specified, -(amount_specified // 2))
            self._set_price(self.sqrt_price_x96 - PRICE_STEP)
        else:
            default = OperationResult(-(amount_specified // 2), amount_specified)
            self._set_price(self.sqrt_price_x96 + PRICE_STEP)
        return self._scripted_or("swap", default)

    def get_view(self) -> "FakePool":
        return self

    def get_position(self, owner: str, tick_lower: int, tick_upper: int) -> Position:
        state = self.positions.get((owner, tick_lower, tick_upper), _PositionState())
        return Position(state.liquidity, state.tokens_owed0, state.tokens_owed1)

    def take_snapshot(self, label: str) -> None:
        self.snapshots.append(label)

    def step_back(self) -> None:
        self.step_backs += 1

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.shutdown_error is not None:
            raise self.shutdown_error


class MemoryEventStore:
    """Event store over plain lists, filtering on the half-open date window."""

    def __init__(
        self,
        events: Optional[List] = None,
        *,
        pool_config: Optional[PoolConfig] = None,
        initial_sqrt_price_x96: int = INITIAL_SQRT_PRICE_X96,
        close_error: Optional[Exception] = None,
    ) -> None:
        self.events = list(events or [])
        self.pool_config = pool_config or PoolConfig(60, "USDC", "WETH", 3000)
        self.initial_sqrt_price_x96 = initial_sqrt_price_x96
        self.close_error = close_error
        self.close_calls = 0
        self.queries: List[Tuple[str, datetime, datetime]] = []

    @staticmethod
    def _bounds(start, end) -> Tuple[datetime, datetime]:
        def normalize(value):
            if isinstance(value, datetime):
                return value
            return datetime(value.year, value.month, value.day)

        return normalize(start), normalize(end)

    async def get_liquidity_events_by_date(self, kind: EventType, start, end) -> List[LiquidityEvent]:
        low, high = self._bounds(start, end)
        self.queries.append((kind.name, low, high))
        return [
            event
            for event in self.events
            if isinstance(event, LiquidityEvent) and event.type is kind and low <= event.timestamp < high
        ]

    async def get_swap_events_by_date(self, start, end) -> List[SwapEvent]:
        low, high = self._bounds(start, end)
        self.queries.append(("SWAP", low, high))
        return [event for event in self.events if isinstance(event, SwapEvent) and low <= event.timestamp < high]

    async def get_pool_config(self) -> PoolConfig:
        return self.pool_config

    async def get_initial_sqrt_price_x96(self) -> int:
        return self.initial_sqrt_price_x96

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error


@dataclass
class EventFactory:
    """Builds events with sensible defaults; block/log positions are required."""

    day: date = date(2021, 5, 5)
    created: List = field(default_factory=list)

    def _timestamp(self, hour: int, day: Optional[date]) -> datetime:
        when = day or self.day
        return datetime(when.year, when.month, when.day, hour)

    def mint(self, block: int, log: int, *, liquidity: int = 1_000, tick_lower: int = -60,
             tick_upper: int = 60, hour: int = 1, day: Optional[date] = None, tx: int = 0) -> LiquidityEvent:
        return self._liquidity(EventType.MINT, block, log, liquidity, tick_lower, tick_upper, hour, day, tx)

    def burn(self, block: int, log: int, *, liquidity: int = 1_000, tick_lower: int = -60,
             tick_upper: int = 60, hour: int = 1, day: Optional[date] = None, tx: int = 0) -> LiquidityEvent:
        return self._liquidity(EventType.BURN, block, log, liquidity, tick_lower, tick_upper, hour, day, tx)

    def _liquidity(self, kind, block, log, liquidity, tick_lower, tick_upper, hour, day, tx) -> LiquidityEvent:
        event = LiquidityEvent(
            type=kind,
            liquidity=liquidity,
            amount0=liquidity,
            amount1=liquidity // 2,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            block_number=block,
            transaction_index=tx,
            log_index=log,
            timestamp=self._timestamp(hour, day),
        )
        self.created.append(event)
        return event

    def swap(self, block: int, log: int, *, amount0: int = 500, amount1: int = -250,
             hour: int = 1, day: Optional[date] = None, tx: int = 0) -> SwapEvent:
        event = SwapEvent(
            amount0=amount0,
            amount1=amount1,
            amount_specified=amount0 if amount0 > 0 else amount1,
            sqrt_price_x96=INITIAL_SQRT_PRICE_X96,
            liquidity=10**18,
            tick=195_000,
            block_number=block,
            transaction_index=tx,
            log_index=log,
            timestamp=self._timestamp(hour, day),
        )
        self.created.append(event)
        return event


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing-app.toml"))
    monkeypatch.delenv("BACKTEST_PROFILE", raising=False)
    settings.get_app_config.cache_clear()
    METRICS.reset()
    yield
    settings.get_app_config.cache_clear()


@pytest.fixture
def fake_pool_cls():
    return FakePool


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def memory_store_cls():
    return MemoryEventStore


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()
