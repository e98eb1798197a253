"""Entrypoint for the volatility band liquidity backtest."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

from .config.settings import AppConfig, get_app_config
from .datalake.schemas import BacktestSummary
from .datalake.storage import SQLiteEventStore, SQLiteRebalanceLogStore
from .execution.pool import load_pool_factory
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .strategy import Backtester, BacktestResult, VolatilityBandStrategy

logger = get_logger(__name__)


async def run_async(config: AppConfig) -> BacktestResult:
    backtest = config.backtest
    if not backtest.pool_factory:
        raise ValueError("No pool factory configured")
    pool_factory = load_pool_factory(backtest.pool_factory)

    event_store = SQLiteEventStore(config.storage.event_database_path)
    log_store = SQLiteRebalanceLogStore(config.storage.log_database_path)
    await log_store.init_tables()
    try:
        pool_config = await event_store.get_pool_config()
        strategy = VolatilityBandStrategy(
            pool_config.tick_spacing,
            config=config.strategy,
            log_sink=log_store,
        )
        backtester = await Backtester.create(strategy, event_store, pool_factory, config=backtest)
        async with backtester:
            result = await backtester.run()
    finally:
        await event_store.close()
        await log_store.close()

    summary = result.evaluation
    if isinstance(summary, BacktestSummary):
        logger.info(
            "Backtest %s: %d rebalances, %s value %d",
            result.run_id,
            summary.rebalance_count,
            result.ledger.token0,
            summary.asset_value_in_token0,
        )
    logger.info("Replay metrics", extra={"metrics": METRICS.snapshot()["counters"]})
    return result


def _build_config(args: argparse.Namespace) -> AppConfig:
    base = get_app_config()
    backtest_updates = {}
    if args.start is not None:
        backtest_updates["start_date"] = args.start
    if args.end is not None:
        backtest_updates["end_date"] = args.end
    if args.pool_factory is not None:
        backtest_updates["pool_factory"] = args.pool_factory
    storage_updates = {}
    if args.events_db is not None:
        storage_updates["event_database_path"] = args.events_db
    if args.log_db is not None:
        storage_updates["log_database_path"] = args.log_db
    backtest = base.backtest.model_validate({**base.backtest.model_dump(), **backtest_updates})
    storage = base.storage.model_copy(update=storage_updates)
    return base.model_copy(update={"backtest": backtest, "storage": storage})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay pool events against the volatility band strategy")
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Day after the last one replayed")
    parser.add_argument(
        "--pool-factory",
        default=None,
        help="Import path 'module:callable' building the pool simulator from a PoolConfig",
    )
    parser.add_argument("--events-db", type=Path, default=None, help="SQLite event store")
    parser.add_argument("--log-db", type=Path, default=None, help="SQLite rebalance log")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _build_config(args)
    if not config.backtest.pool_factory:
        parser.error("no pool factory configured; pass --pool-factory module:callable")
    bootstrap_observability(config=config)
    asyncio.run(run_async(config))


if __name__ == "__main__":
    main()
