"""Volatility band liquidity strategy.

Once a full window of daily prices is available the strategy rebalances every
day: the position is re-centred on the current price with a width of
``std_ratio`` standard deviations of the token0-per-token1 price window.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

from ..config.settings import StrategyConfig, get_app_config
from ..datalake.schemas import BacktestSummary, RebalanceLog
from ..datalake.storage import RebalanceLogSink
from ..execution.engine import Engine
from ..execution.errors import BacktestError
from ..execution.pool import PoolView
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import MAX_SQRT_RATIO, MAX_UINT128, MIN_SQRT_RATIO
from ..utils.price_math import (
    assets_in_token0,
    available_tick,
    inverse_price_x192,
    max_liquidity_for_amounts,
    price_x192,
    sqrt_price_to_view,
    sqrt_ratio_at_tick,
    standard_deviation,
    tick_at_sqrt_ratio,
)
from .base import Phase, RunContext


@dataclass(slots=True)
class VolatilityBandState:
    price_log: List[int] = field(default_factory=list)
    rebalance_logs: List[RebalanceLog] = field(default_factory=list)
    last_tick_lower: Optional[int] = None
    last_tick_upper: Optional[int] = None
    last_liquidity: int = 0
    asset_value_in_token0: int = 0


@dataclass(slots=True)
class BandRange:
    tick_lower: int
    tick_upper: int
    sqrt_lower: int
    sqrt_upper: int


class VolatilityBandStrategy:
    """Rebalances a single range position around the current price once a day."""

    name = "volatility_band"

    def __init__(
        self,
        tick_spacing: int,
        *,
        config: Optional[StrategyConfig] = None,
        log_sink: Optional[RebalanceLogSink] = None,
    ) -> None:
        self._config = config or get_app_config().strategy
        self._tick_spacing = tick_spacing
        self._log_sink = log_sink
        # std_ratio is applied in hundredths so the band stays integral
        self._ratio_percent = round(self._config.std_ratio * 100)
        self._logger = get_logger(__name__)

    @property
    def owner(self) -> str:
        return self._config.owner

    def create_state(self) -> VolatilityBandState:
        return VolatilityBandState()

    def trigger(self, phase: Phase, pool: PoolView, context: RunContext[VolatilityBandState]) -> bool:
        if phase is Phase.AFTER_NEW_DAY:
            return len(context.state.price_log) >= self._config.price_window_days
        return False

    def cache(self, phase: Phase, pool: PoolView, context: RunContext[VolatilityBandState]) -> None:
        if phase is Phase.AFTER_NEW_DAY:
            context.state.price_log.append(pool.sqrt_price_x96)

    async def act(
        self,
        phase: Phase,
        engine: Engine,
        pool: PoolView,
        context: RunContext[VolatilityBandState],
    ) -> None:
        if phase is not Phase.AFTER_NEW_DAY:
            return
        state = context.state
        ledger = context.ledger
        curr_price = context.sqrt_price_x96
        band = self.compute_band(state.price_log[-self._config.price_window_days:], curr_price, context.tick_current)

        token0_fee = token1_fee = amount0_out = amount1_out = 0
        if state.last_tick_lower is not None and state.last_tick_upper is not None and state.last_liquidity > 0:
            lower, upper = state.last_tick_lower, state.last_tick_upper
            # zero burn refreshes the fees owed to the position
            await engine.burn(self.owner, lower, upper, 0)
            position = pool.get_position(self.owner, lower, upper)
            token0_fee, token1_fee = position.tokens_owed0, position.tokens_owed1
            before0, before1 = ledger.balance0, ledger.balance1
            await engine.burn(self.owner, lower, upper, state.last_liquidity)
            await engine.collect(self.owner, lower, upper, MAX_UINT128, MAX_UINT128)
            amount0_out = ledger.balance0 - before0 - token0_fee
            amount1_out = ledger.balance1 - before1 - token1_fee

        balance0, balance1 = ledger.balance0, ledger.balance1
        amount_limit = assets_in_token0(balance0, balance1, curr_price)
        amount0_in, amount1_in = self.target_amounts(amount_limit, curr_price, band)

        try:
            if balance0 > amount0_in:
                await engine.swap(True, balance0 - amount0_in)
            elif balance1 > amount1_in:
                await engine.swap(False, balance1 - amount1_in)
        except BacktestError as exc:
            METRICS.increment("strategy.swap_failures")
            self._logger.warning("Rebalance swap failed: %s", exc)

        balance0, balance1 = ledger.balance0, ledger.balance1
        swap_fee = amount_limit - assets_in_token0(balance0, balance1, curr_price)
        liquidity = max_liquidity_for_amounts(curr_price, band.sqrt_lower, band.sqrt_upper, balance0, balance1)
        if liquidity > 0:
            try:
                await engine.mint(self.owner, band.tick_lower, band.tick_upper, liquidity)
            except BacktestError as exc:
                METRICS.increment("strategy.mint_failures")
                self._logger.warning("Rebalance mint failed: %s", exc)

        position_liquidity = pool.get_position(self.owner, band.tick_lower, band.tick_upper).liquidity
        state.last_tick_lower = band.tick_lower
        state.last_tick_upper = band.tick_upper
        state.last_liquidity = position_liquidity
        state.asset_value_in_token0 = amount_limit

        log = RebalanceLog(
            curr_price=curr_price,
            amount0_out=amount0_out,
            amount1_out=amount1_out,
            token0_fee=token0_fee,
            token1_fee=token1_fee,
            curr_price_view=sqrt_price_to_view(curr_price),
            # token0-per-token1 bounds are the inverse of the tick bounds
            price_lower_view=sqrt_price_to_view(band.sqrt_upper),
            price_upper_view=sqrt_price_to_view(band.sqrt_lower),
            tick_lower=band.tick_lower,
            tick_upper=band.tick_upper,
            amount0_in=amount0_in,
            amount1_in=amount1_in,
            liquidity=position_liquidity,
            swap_fee=swap_fee,
            usdc_value=amount_limit,
            date=context.current_date,
        )
        state.rebalance_logs.append(log)
        METRICS.increment("strategy.rebalances")
        self._logger.info(
            "Rebalanced into [%s, %s]",
            band.tick_lower,
            band.tick_upper,
            extra={"liquidity": position_liquidity, "usdc_value": amount_limit, "swap_fee": swap_fee},
        )
        if self._log_sink is not None:
            await self._log_sink.persist_rebalance_log(log)

    def evaluate(self, pool: PoolView, context: RunContext[VolatilityBandState]) -> BacktestSummary:
        state = context.state
        summary = BacktestSummary(
            rebalance_count=len(state.rebalance_logs),
            token0_balance=context.ledger.balance0,
            token1_balance=context.ledger.balance1,
            asset_value_in_token0=state.asset_value_in_token0,
            final_sqrt_price_x96=pool.sqrt_price_x96,
            final_tick=pool.tick_current,
        )
        self._logger.info(
            "Rebalance count %s, assets %s value %s",
            summary.rebalance_count,
            context.ledger.token0,
            summary.asset_value_in_token0,
        )
        return summary

    def compute_band(self, prices: List[int], curr_price: int, curr_tick: int) -> BandRange:
        """Tick range spanning the configured deviations around ``curr_price``."""

        deviation = standard_deviation([inverse_price_x192(price_x192(p)) for p in prices])
        offset = deviation * self._ratio_percent // 100
        inverse_curr = inverse_price_x192(price_x192(curr_price))

        sqrt_lower = math.isqrt(inverse_price_x192(inverse_curr + offset))
        if inverse_curr - offset > 0:
            sqrt_upper = math.isqrt(inverse_price_x192(inverse_curr - offset))
        else:
            sqrt_upper = MAX_SQRT_RATIO - 1
        sqrt_lower = max(sqrt_lower, MIN_SQRT_RATIO)
        sqrt_upper = min(sqrt_upper, MAX_SQRT_RATIO - 1)

        spacing = self._tick_spacing
        tick_lower = available_tick(tick_at_sqrt_ratio(sqrt_lower), spacing)
        tick_upper = available_tick(tick_at_sqrt_ratio(sqrt_upper), spacing)
        # keep the current tick strictly inside the range
        floor_tick = curr_tick // spacing * spacing
        tick_lower = min(tick_lower, floor_tick)
        tick_upper = max(tick_upper, floor_tick + spacing)
        return BandRange(
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            sqrt_lower=sqrt_ratio_at_tick(tick_lower),
            sqrt_upper=sqrt_ratio_at_tick(tick_upper),
        )

    @staticmethod
    def target_amounts(amount_limit: int, curr_price: int, band: BandRange) -> tuple[int, int]:
        """Split ``amount_limit`` (in token0) into the amounts the range takes at ``curr_price``."""

        lower, upper = band.sqrt_lower, band.sqrt_upper
        denominator = (curr_price - lower) * curr_price * upper + (upper - curr_price) * curr_price * curr_price
        if denominator <= 0:
            return amount_limit, 0
        amount0 = amount_limit * (upper - curr_price) * curr_price * curr_price // denominator
        amount1 = (
            amount_limit * (curr_price - lower) * curr_price * upper * curr_price * curr_price // denominator
        ) >> 192
        return amount0, amount1


__all__ = ["BandRange", "VolatilityBandState", "VolatilityBandStrategy"]
