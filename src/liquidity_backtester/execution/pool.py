"""Interfaces of the AMM pool collaborator driven during replay."""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Union

from ..datalake.schemas import PoolConfig


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Token deltas reported by the pool, signed from the pool's side."""

    amount0: int
    amount1: int


@dataclass(frozen=True, slots=True)
class Position:
    liquidity: int
    tokens_owed0: int
    tokens_owed1: int


class PoolView(Protocol):
    """Live read-only view of the pool state."""

    @property
    def sqrt_price_x96(self) -> int:
        ...

    @property
    def tick_current(self) -> int:
        ...

    @property
    def liquidity(self) -> int:
        ...

    def get_position(self, owner: str, tick_lower: int, tick_upper: int) -> Position:
        """Return the position keyed by owner and range (zeroed when absent)."""


class CorePool(Protocol):
    """Concentrated-liquidity pool simulator consumed by the engine and the driver.

    Implementations signal rejected operations by raising
    :class:`~liquidity_backtester.execution.errors.PoolOperationError`.
    """

    async def initialize(self, sqrt_price_x96: int) -> None:
        ...

    async def mint(self, recipient: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        ...

    async def burn(self, owner: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        ...

    async def collect(
        self,
        recipient: str,
        tick_lower: int,
        tick_upper: int,
        amount0_requested: int,
        amount1_requested: int,
    ) -> OperationResult:
        ...

    async def swap(
        self,
        zero_for_one: bool,
        amount_specified: int,
        sqrt_price_limit_x96: Optional[int] = None,
    ) -> OperationResult:
        ...

    def get_view(self) -> PoolView:
        ...

    def take_snapshot(self, label: str) -> None:
        """Checkpoint the current state so replay cost stays bounded."""

    def step_back(self) -> None:
        """Revert the most recent state transition."""

    async def shutdown(self) -> None:
        ...


PoolFactory = Callable[[PoolConfig], Union[CorePool, Awaitable[CorePool]]]


def load_pool_factory(path: str) -> PoolFactory:
    """Resolve a ``module:attribute`` path to a pool factory callable."""

    module_name, sep, attr_path = path.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Pool factory path must look like 'module:attribute', got {path!r}")
    target: object = importlib.import_module(module_name)
    for part in attr_path.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"Pool factory {path!r} is not callable")
    return target  # type: ignore[return-value]


async def build_pool(factory: PoolFactory, config: PoolConfig) -> CorePool:
    pool = factory(config)
    if inspect.isawaitable(pool):
        pool = await pool
    return pool  # type: ignore[return-value]


__all__ = [
    "CorePool",
    "OperationResult",
    "PoolFactory",
    "PoolView",
    "Position",
    "build_pool",
    "load_pool_factory",
]
