"""Strategy package exports."""

from .backtester import Backtester, BacktestResult
from .base import HookSet, Phase, RunContext, Strategy
from .volatility_band import VolatilityBandState, VolatilityBandStrategy

__all__ = [
    "Backtester",
    "BacktestResult",
    "HookSet",
    "Phase",
    "RunContext",
    "Strategy",
    "VolatilityBandState",
    "VolatilityBandStrategy",
]
