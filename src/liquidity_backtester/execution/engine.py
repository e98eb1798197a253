"""Dry-run execution engine: pool operations settled against the account ledger."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .errors import ConcurrentOperationError, InsufficientBalanceError
from .ledger import AccountLedger, LedgerView
from .pool import CorePool, OperationResult


class Engine(Protocol):
    """Operations a strategy may issue against the simulated pool."""

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


class DryRunEngine:
    """Forwards strategy operations to the pool and settles them in the ledger.

    Ledger effects per operation:

    * ``mint``: the owner pays the amounts the pool takes in.
    * ``burn``: none, the amounts become owed to the position.
    * ``collect``: the owner receives the collected amounts.
    * ``swap``: the owner pays what the pool received and receives what it paid out.

    When settlement would overdraw the ledger the ledger is left untouched,
    the pool is stepped back (unless ``revert_pool_on_rejection`` is false)
    and :class:`InsufficientBalanceError` is raised. Pool rejections
    propagate unchanged. Operations must be awaited one at a time.
    """

    def __init__(self, pool: CorePool, ledger: AccountLedger, *, revert_pool_on_rejection: bool = True) -> None:
        self._pool = pool
        self._ledger = ledger
        self._view = ledger.view()
        self._revert_pool_on_rejection = revert_pool_on_rejection
        self._in_flight: Optional[str] = None
        self._logger = get_logger(__name__)

    @property
    def ledger(self) -> LedgerView:
        return self._view

    async def mint(self, recipient: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        with self._operation("mint"):
            result = await self._pool.mint(recipient, tick_lower, tick_upper, amount)
            self._settle("mint", -result.amount0, -result.amount1)
            self._logger.debug(
                "mint settled",
                extra={"tick_lower": tick_lower, "tick_upper": tick_upper, "liquidity": amount,
                       "amount0": result.amount0, "amount1": result.amount1},
            )
            return result

    async def burn(self, owner: str, tick_lower: int, tick_upper: int, amount: int) -> OperationResult:
        with self._operation("burn"):
            result = await self._pool.burn(owner, tick_lower, tick_upper, amount)
            self._logger.debug(
                "burn applied",
                extra={"tick_lower": tick_lower, "tick_upper": tick_upper, "liquidity": amount,
                       "amount0": result.amount0, "amount1": result.amount1},
            )
            return result

    async def collect(
        self,
        recipient: str,
        tick_lower: int,
        tick_upper: int,
        amount0_requested: int,
        amount1_requested: int,
    ) -> OperationResult:
        with self._operation("collect"):
            result = await self._pool.collect(
                recipient, tick_lower, tick_upper, amount0_requested, amount1_requested
            )
            self._settle("collect", result.amount0, result.amount1)
            self._logger.debug(
                "collect settled",
                extra={"tick_lower": tick_lower, "tick_upper": tick_upper,
                       "amount0": result.amount0, "amount1": result.amount1},
            )
            return result

    async def swap(
        self,
        zero_for_one: bool,
        amount_specified: int,
        sqrt_price_limit_x96: Optional[int] = None,
    ) -> OperationResult:
        with self._operation("swap"):
            result = await self._pool.swap(zero_for_one, amount_specified, sqrt_price_limit_x96)
            self._settle("swap", -result.amount0, -result.amount1)
            self._logger.debug(
                "swap settled",
                extra={"zero_for_one": zero_for_one, "amount_specified": amount_specified,
                       "amount0": result.amount0, "amount1": result.amount1},
            )
            return result

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        if self._in_flight is not None:
            raise ConcurrentOperationError(f"{name} issued while {self._in_flight} is in flight")
        self._in_flight = name
        METRICS.increment(f"engine.{name}")
        try:
            with METRICS.timed(f"engine.{name}_seconds"):
                yield
        finally:
            self._in_flight = None

    def _settle(self, operation: str, delta0: int, delta1: int) -> None:
        try:
            self._ledger.apply(delta0, delta1, operation=operation)
        except InsufficientBalanceError as exc:
            METRICS.increment("engine.rejected")
            self._logger.warning(
                "%s rejected: %s", operation, exc,
                extra={"token": exc.token, "balance": exc.balance, "delta": exc.delta},
            )
            if self._revert_pool_on_rejection:
                self._pool.step_back()
            raise


__all__ = ["DryRunEngine", "Engine"]
