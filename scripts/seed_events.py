"""Seed the SQLite event store from a JSON-lines export of pool events."""

from __future__ import annotations

import argparse
import json
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Tuple

from liquidity_backtester.config.settings import get_app_config
from liquidity_backtester.datalake.schemas import EventType, LiquidityEvent, PoolConfig, SwapEvent
from liquidity_backtester.datalake.storage import SQLiteEventStore
from liquidity_backtester.utils.constants import FEE_AMOUNT_MEDIUM

# sqrtPriceX96 of the USDC/WETH 0.3% pool at creation.
DEFAULT_INITIAL_SQRT_PRICE_X96 = 0x43EFEF20F018FDC58E7A5CF0416A


def _read_records(path: Path) -> Iterator[dict]:
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                raise SystemExit(f"{path}:{line_number}: invalid JSON ({exc})") from exc


def _parse(records: Iterator[dict]) -> Tuple[List[LiquidityEvent], List[SwapEvent]]:
    liquidity: List[LiquidityEvent] = []
    swaps: List[SwapEvent] = []
    for record in records:
        kind = record["kind"].upper()
        common = dict(
            block_number=int(record["block_number"]),
            transaction_index=int(record.get("transaction_index", 0)),
            log_index=int(record["log_index"]),
            timestamp=datetime.fromisoformat(record["timestamp"]),
        )
        if kind == "SWAP":
            swaps.append(
                SwapEvent(
                    amount0=int(record["amount0"]),
                    amount1=int(record["amount1"]),
                    amount_specified=int(record.get("amount_specified", record["amount0"])),
                    sqrt_price_x96=int(record["sqrt_price_x96"]),
                    liquidity=int(record["liquidity"]),
                    tick=int(record["tick"]),
                    **common,
                )
            )
        else:
            liquidity.append(
                LiquidityEvent(
                    type=EventType[kind],
                    liquidity=int(record["liquidity"]),
                    amount0=int(record["amount0"]),
                    amount1=int(record["amount1"]),
                    tick_lower=int(record["tick_lower"]),
                    tick_upper=int(record["tick_upper"]),
                    **common,
                )
            )
    return liquidity, swaps


def main() -> None:
    parser = argparse.ArgumentParser(description="Load pool events into the backtest event store.")
    parser.add_argument("events", type=Path, help="JSON-lines file, one event per line")
    parser.add_argument("--database", type=Path, default=None, help="Event store path (defaults to config)")
    parser.add_argument("--tick-spacing", type=int, default=60)
    parser.add_argument("--token0", default="USDC")
    parser.add_argument("--token1", default="WETH")
    parser.add_argument("--fee-amount", type=int, default=FEE_AMOUNT_MEDIUM)
    parser.add_argument(
        "--initial-sqrt-price",
        type=lambda value: int(value, 0),
        default=DEFAULT_INITIAL_SQRT_PRICE_X96,
        help="Initial sqrtPriceX96 (decimal or 0x-prefixed)",
    )
    args = parser.parse_args()

    database = args.database or get_app_config().storage.event_database_path
    store = SQLiteEventStore(database)
    store.set_pool_config(
        PoolConfig(
            tick_spacing=args.tick_spacing,
            token0=args.token0,
            token1=args.token1,
            fee_amount=args.fee_amount,
        ),
        args.initial_sqrt_price,
    )
    liquidity, swaps = _parse(_read_records(args.events))
    mints_burns = store.record_liquidity_events(liquidity)
    swap_count = store.record_swap_events(swaps)
    print(f"Seeded {database}: {mints_burns} mint/burn events, {swap_count} swaps")


if __name__ == "__main__":
    main()
