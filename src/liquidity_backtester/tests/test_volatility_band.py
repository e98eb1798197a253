from __future__ import annotations

import asyncio
from datetime import date

from liquidity_backtester.config.settings import BacktestConfig, StrategyConfig
from liquidity_backtester.datalake.schemas import BacktestSummary
from liquidity_backtester.execution.ledger import AccountLedger
from liquidity_backtester.execution.pool import OperationResult
from liquidity_backtester.strategy import Backtester, Phase, RunContext, VolatilityBandStrategy
from liquidity_backtester.strategy.volatility_band import BandRange
from liquidity_backtester.utils.constants import MAX_UINT128, Q96
from liquidity_backtester.utils.price_math import sqrt_ratio_at_tick, tick_at_sqrt_ratio

INITIAL_SQRT_PRICE = 0x43EFEF20F018FDC58E7A5CF0416A


class ListSink:
    def __init__(self) -> None:
        self.logs = []

    async def persist_rebalance_log(self, log) -> int:
        self.logs.append(log)
        return len(self.logs)


def _strategy(window: int = 3, sink=None) -> VolatilityBandStrategy:
    return VolatilityBandStrategy(60, config=StrategyConfig(price_window_days=window), log_sink=sink)


def test_band_with_flat_prices_still_brackets_current_tick() -> None:
    strategy = _strategy()
    tick = tick_at_sqrt_ratio(INITIAL_SQRT_PRICE)

    band = strategy.compute_band([INITIAL_SQRT_PRICE] * 3, INITIAL_SQRT_PRICE, tick)

    assert band.tick_lower % 60 == 0 and band.tick_upper % 60 == 0
    assert band.tick_lower <= tick < band.tick_upper
    assert band.sqrt_lower == sqrt_ratio_at_tick(band.tick_lower)
    assert band.sqrt_upper == sqrt_ratio_at_tick(band.tick_upper)


def test_band_widens_with_volatility() -> None:
    strategy = _strategy()
    tick = tick_at_sqrt_ratio(INITIAL_SQRT_PRICE)
    step = INITIAL_SQRT_PRICE // 20
    volatile = [INITIAL_SQRT_PRICE - step, INITIAL_SQRT_PRICE, INITIAL_SQRT_PRICE + step]

    flat = strategy.compute_band([INITIAL_SQRT_PRICE] * 3, INITIAL_SQRT_PRICE, tick)
    wide = strategy.compute_band(volatile, INITIAL_SQRT_PRICE, tick)

    assert wide.tick_upper - wide.tick_lower > flat.tick_upper - flat.tick_lower
    assert wide.tick_lower < tick < wide.tick_upper


def test_target_amounts_at_range_edge_are_single_sided() -> None:
    band = BandRange(tick_lower=0, tick_upper=60, sqrt_lower=Q96, sqrt_upper=sqrt_ratio_at_tick(60))

    assert VolatilityBandStrategy.target_amounts(1_000_000, Q96, band) == (1_000_000, 0)


def test_triggers_once_window_is_full(fake_pool) -> None:
    strategy = _strategy(window=2)
    context = RunContext(ledger=AccountLedger(1, 0).view(), state=strategy.create_state())
    strategy.cache(Phase.AFTER_NEW_DAY, fake_pool, context)
    assert not strategy.trigger(Phase.AFTER_NEW_DAY, fake_pool, context)
    strategy.cache(Phase.AFTER_NEW_DAY, fake_pool, context)
    strategy.cache(Phase.AFTER_EVENT_APPLIED, fake_pool, context)

    assert context.state.price_log == [fake_pool.sqrt_price_x96] * 2
    assert strategy.trigger(Phase.AFTER_NEW_DAY, fake_pool, context)
    assert not strategy.trigger(Phase.AFTER_EVENT_APPLIED, fake_pool, context)


def test_rebalances_daily_and_logs_each_decision(memory_store_cls, fake_pool) -> None:
    sink = ListSink()
    strategy = _strategy(window=3, sink=sink)
    fake_pool.script("mint", OperationResult(1_000, 10), OperationResult(2_000, 20))
    ledger = AccountLedger(2_000 * 10**6, 0, token0="USDC", token1="WETH")
    config = BacktestConfig(start_date=date(2021, 5, 5), end_date=date(2021, 5, 9))
    backtester = Backtester(strategy, memory_store_cls(), fake_pool, ledger, config=config)

    result = asyncio.run(backtester.run())

    assert [log.date for log in sink.logs] == [date(2021, 5, 7), date(2021, 5, 8)]
    first, second = sink.logs
    assert (first.amount0_out, first.token0_fee) == (0, 0)
    assert first.liquidity > 0
    assert first.usdc_value == 2_000 * 10**6
    assert first.tick_lower < first.tick_upper
    assert first.price_lower_view <= first.curr_price_view <= first.price_upper_view

    # the first position is burned with a zero-liquidity fee read, collected, then replaced
    owner_calls = [call for call in fake_pool.calls if call[1] == "0x01"]
    lower, upper = first.tick_lower, first.tick_upper
    assert ("burn", "0x01", lower, upper, 0) in owner_calls
    assert ("burn", "0x01", lower, upper, first.liquidity) in owner_calls
    assert ("collect", "0x01", lower, upper, MAX_UINT128, MAX_UINT128) in owner_calls
    assert second.amount0_out == first.liquidity

    summary = result.evaluation
    assert isinstance(summary, BacktestSummary)
    assert summary.rebalance_count == 2
    assert summary.token0_balance == result.ledger.balance0
    assert summary.asset_value_in_token0 == second.usdc_value
