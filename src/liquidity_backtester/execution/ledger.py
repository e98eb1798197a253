"""Two-token account ledger for the simulated strategy owner."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass

from ..monitoring.logger import get_logger
from .errors import InsufficientBalanceError


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    token0: str
    token1: str
    balance0: int
    balance1: int

    def serialize(self) -> bytes:
        return json.dumps(asdict(self), sort_keys=True).encode("utf-8")


class AccountLedger:
    """Holds the strategy's token balances; never lets either go negative.

    Deltas are applied to both tokens together: when either resulting
    balance would be negative nothing is changed.
    """

    def __init__(self, balance0: int, balance1: int = 0, *, token0: str = "token0", token1: str = "token1") -> None:
        if balance0 < 0 or balance1 < 0:
            raise ValueError("initial balances must be non-negative")
        self._token0 = token0
        self._token1 = token1
        self._balance0 = balance0
        self._balance1 = balance1
        self._logger = get_logger(__name__)

    @property
    def token0(self) -> str:
        return self._token0

    @property
    def token1(self) -> str:
        return self._token1

    @property
    def balance0(self) -> int:
        return self._balance0

    @property
    def balance1(self) -> int:
        return self._balance1

    def balance_of(self, token: str) -> int:
        if token == self._token0:
            return self._balance0
        if token == self._token1:
            return self._balance1
        raise KeyError(token)

    def apply(self, delta0: int, delta1: int, *, operation: str = "adjust") -> LedgerSnapshot:
        new0 = self._balance0 + delta0
        new1 = self._balance1 + delta1
        if new0 < 0:
            raise InsufficientBalanceError(operation, self._token0, self._balance0, delta0)
        if new1 < 0:
            raise InsufficientBalanceError(operation, self._token1, self._balance1, delta1)
        self._balance0, self._balance1 = new0, new1
        self._logger.debug(
            "ledger updated",
            extra={"operation": operation, "balance0": new0, "balance1": new1},
        )
        return self.snapshot()

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(self._token0, self._token1, self._balance0, self._balance1)

    def serialize(self) -> bytes:
        return self.snapshot().serialize()

    def view(self) -> "LedgerView":
        return LedgerView(self)


class LedgerView:
    """Read-only handle on a ledger, given to strategy hooks."""

    __slots__ = ("_ledger",)

    def __init__(self, ledger: AccountLedger) -> None:
        self._ledger = ledger

    @property
    def token0(self) -> str:
        return self._ledger.token0

    @property
    def token1(self) -> str:
        return self._ledger.token1

    @property
    def balance0(self) -> int:
        return self._ledger.balance0

    @property
    def balance1(self) -> int:
        return self._ledger.balance1

    def balance_of(self, token: str) -> int:
        return self._ledger.balance_of(token)

    def snapshot(self) -> LedgerSnapshot:
        return self._ledger.snapshot()


__all__ = ["AccountLedger", "LedgerSnapshot", "LedgerView"]
