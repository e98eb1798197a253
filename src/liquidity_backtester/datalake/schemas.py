"""Data models shared by the event store, the replay driver and the log sink."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import IntEnum
from typing import Literal, Union


class EventType(IntEnum):
    """Pool event kinds, valued as stored in the ``type`` column."""

    MINT = 1
    BURN = 2
    SWAP = 3


@dataclass(frozen=True, slots=True)
class LiquidityEvent:
    """A historical MINT or BURN against a tick range."""

    type: Literal[EventType.MINT, EventType.BURN]
    liquidity: int
    amount0: int
    amount1: int
    tick_lower: int
    tick_upper: int
    block_number: int
    transaction_index: int
    log_index: int
    timestamp: datetime
    id: int | None = None

    def __post_init__(self) -> None:
        if self.type not in (EventType.MINT, EventType.BURN):
            raise ValueError(f"LiquidityEvent cannot carry type {self.type!r}")
        if self.tick_lower >= self.tick_upper:
            raise ValueError(
                f"tick_lower must be below tick_upper, got [{self.tick_lower}, {self.tick_upper}]"
            )
        if self.liquidity < 0:
            raise ValueError("liquidity must be unsigned")


@dataclass(frozen=True, slots=True)
class SwapEvent:
    """A historical swap with the pool state it left behind."""

    amount0: int
    amount1: int
    amount_specified: int
    sqrt_price_x96: int
    liquidity: int
    tick: int
    block_number: int
    transaction_index: int
    log_index: int
    timestamp: datetime
    id: int | None = None
    type: Literal[EventType.SWAP] = field(default=EventType.SWAP, init=False)

    @property
    def zero_for_one(self) -> bool:
        # token0 flowed into the pool
        return self.amount0 > 0


PoolEvent = Union[LiquidityEvent, SwapEvent]


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Static description of the replayed pool."""

    tick_spacing: int
    token0: str
    token1: str
    fee_amount: int

    def __post_init__(self) -> None:
        if self.tick_spacing <= 0:
            raise ValueError("tick_spacing must be positive")


@dataclass(slots=True)
class RebalanceLog:
    """One rebalance decision as written to the log sink."""

    curr_price: int
    amount0_out: int
    amount1_out: int
    token0_fee: int
    token1_fee: int
    curr_price_view: int
    price_lower_view: int
    price_upper_view: int
    tick_lower: int
    tick_upper: int
    amount0_in: int
    amount1_in: int
    liquidity: int
    swap_fee: int
    usdc_value: int
    date: date | datetime
    id: int | None = None


@dataclass(slots=True)
class BacktestSummary:
    """Outcome reported by a strategy's evaluate hook."""

    rebalance_count: int
    token0_balance: int
    token1_balance: int
    asset_value_in_token0: int
    final_sqrt_price_x96: int
    final_tick: int


__all__ = [
    "BacktestSummary",
    "EventType",
    "LiquidityEvent",
    "PoolConfig",
    "PoolEvent",
    "RebalanceLog",
    "SwapEvent",
]
