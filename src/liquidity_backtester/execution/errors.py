"""Exceptions raised by the execution layer."""

from __future__ import annotations


class BacktestError(Exception):
    """Base class for failures surfaced to strategies or the run caller."""


class InsufficientBalanceError(BacktestError):
    """A ledger mutation would have driven a balance below zero."""

    def __init__(self, operation: str, token: str, balance: int, delta: int) -> None:
        self.operation = operation
        self.token = token
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"{operation}: {token} balance {balance} cannot absorb delta {delta}"
        )


class PoolOperationError(BacktestError):
    """The pool collaborator rejected an operation (bad tick range, overflow, ...)."""


class ConcurrentOperationError(BacktestError):
    """An engine operation was issued while another one was still in flight."""


__all__ = [
    "BacktestError",
    "ConcurrentOperationError",
    "InsufficientBalanceError",
    "PoolOperationError",
]
