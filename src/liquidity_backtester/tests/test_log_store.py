from __future__ import annotations

import asyncio
import sqlite3
from datetime import date, datetime
from pathlib import Path

from liquidity_backtester.datalake.schemas import RebalanceLog
from liquidity_backtester.datalake.storage import SQLiteRebalanceLogStore


def _log(**overrides) -> RebalanceLog:
    values = dict(
        curr_price=0x43EFEF20F018FDC58E7A5CF0416A,
        amount0_out=0,
        amount1_out=0,
        token0_fee=0,
        token1_fee=0,
        curr_price_view=3_400,
        price_lower_view=3_100,
        price_upper_view=3_700,
        tick_lower=194_160,
        tick_upper=196_080,
        amount0_in=1_000_000_000,
        amount1_in=294_117_647_058_823_529,
        liquidity=12_345_678_901_234,
        swap_fee=3_000_000,
        usdc_value=2_000_000_000,
        date=datetime(2021, 5, 12, 0, 0, 0, 123_456),
    )
    values.update(overrides)
    return RebalanceLog(**values)


def test_persist_and_list_rebalance_logs(tmp_path: Path) -> None:
    store = SQLiteRebalanceLogStore(tmp_path / "logs.sqlite3")

    async def scenario():
        await store.init_tables()
        first = _log()
        first_id = await store.persist_rebalance_log(first)
        second_id = await store.persist_rebalance_log(_log(tick_lower=-120, tick_upper=60, date=date(2021, 5, 13)))
        rows = await store.list_rebalance_logs()
        await store.close()
        return first, first_id, second_id, rows

    first, first_id, second_id, rows = asyncio.run(scenario())

    assert first.id == first_id
    assert second_id > first_id
    assert [row.id for row in rows] == [first_id, second_id]
    assert rows[0].curr_price == 0x43EFEF20F018FDC58E7A5CF0416A
    assert rows[0].amount1_in == 294_117_647_058_823_529
    # dates are stored with millisecond precision
    assert rows[0].date == datetime(2021, 5, 12, 0, 0, 0, 123_000)
    assert rows[1].tick_lower == -120
    assert rows[1].date == datetime(2021, 5, 13)


def test_list_respects_limit(tmp_path: Path) -> None:
    store = SQLiteRebalanceLogStore(tmp_path / "logs.sqlite3")

    async def scenario():
        await store.init_tables()
        for _ in range(3):
            await store.persist_rebalance_log(_log())
        return await store.list_rebalance_logs(limit=2)

    assert len(asyncio.run(scenario())) == 2


def test_insert_retries_when_database_is_locked(tmp_path: Path, monkeypatch) -> None:
    store = SQLiteRebalanceLogStore(tmp_path / "logs.sqlite3")
    asyncio.run(store.init_tables())
    real_connect = sqlite3.connect
    attempts = {"count": 0}

    def flaky_connect(*args, **kwargs):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_connect(*args, **kwargs)

    monkeypatch.setattr(sqlite3, "connect", flaky_connect)
    row_id = asyncio.run(store.persist_rebalance_log(_log()))
    monkeypatch.setattr(sqlite3, "connect", real_connect)

    assert row_id == 1
    assert attempts["count"] == 2
    assert len(asyncio.run(store.list_rebalance_logs())) == 1
