"""SQLite persistence for historical pool events and rebalance logs."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from cachetools import LRUCache, cachedmethod
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..monitoring.logger import get_logger
from ..utils.constants import LOG_DATE_FORMAT, STORE_DATE_FORMAT
from .schemas import EventType, LiquidityEvent, PoolConfig, RebalanceLog, SwapEvent


class EventStore(Protocol):
    """Read side of a historical event source for one pool."""

    async def get_liquidity_events_by_date(
        self, kind: EventType, start: datetime, end: datetime
    ) -> List[LiquidityEvent]:
        ...

    async def get_swap_events_by_date(self, start: datetime, end: datetime) -> List[SwapEvent]:
        ...

    async def get_pool_config(self) -> PoolConfig:
        ...

    async def get_initial_sqrt_price_x96(self) -> int:
        ...

    async def close(self) -> None:
        ...


class RebalanceLogSink(Protocol):
    """Destination for per-rebalance records written by strategies."""

    async def persist_rebalance_log(self, log: RebalanceLog) -> int:
        ...


class StoreClosedError(RuntimeError):
    """Raised when a closed store is queried."""


CREATE_LIQUIDITY_EVENT_TABLE = """
CREATE TABLE IF NOT EXISTS liquidity_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type INTEGER NOT NULL,
    liquidity TEXT NOT NULL,
    amount0 TEXT NOT NULL,
    amount1 TEXT NOT NULL,
    tick_lower INTEGER NOT NULL,
    tick_upper INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    transaction_index INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    date TEXT NOT NULL
);
"""

CREATE_LIQUIDITY_EVENT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_liquidity_events_type_date ON liquidity_events (type, date);
"""

CREATE_SWAP_EVENT_TABLE = """
CREATE TABLE IF NOT EXISTS swap_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    amount0 TEXT NOT NULL,
    amount1 TEXT NOT NULL,
    amount_specified TEXT NOT NULL,
    sqrt_price_x96 TEXT NOT NULL,
    liquidity TEXT NOT NULL,
    tick INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    transaction_index INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    date TEXT NOT NULL
);
"""

CREATE_SWAP_EVENT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_swap_events_date ON swap_events (date);
"""

CREATE_POOL_CONFIG_TABLE = """
CREATE TABLE IF NOT EXISTS pool_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    tick_spacing INTEGER NOT NULL,
    token0 TEXT NOT NULL,
    token1 TEXT NOT NULL,
    fee_amount INTEGER NOT NULL,
    initial_sqrt_price_x96 TEXT NOT NULL
);
"""

CREATE_REBALANCE_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS rebalance_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    curr_price TEXT,
    amount0_out TEXT,
    amount1_out TEXT,
    token0_fee TEXT,
    token1_fee TEXT,
    curr_price_view TEXT,
    price_lower_view TEXT,
    price_upper_view TEXT,
    tick_lower INTEGER,
    tick_upper INTEGER,
    amount0_in TEXT,
    amount1_in TEXT,
    liquidity TEXT,
    swap_fee TEXT,
    usdc_value TEXT,
    date TEXT
);
"""

_LIQUIDITY_COLUMNS = (
    "id, type, liquidity, amount0, amount1, tick_lower, tick_upper, "
    "block_number, transaction_index, log_index, date"
)
_SWAP_COLUMNS = (
    "id, amount0, amount1, amount_specified, sqrt_price_x96, liquidity, tick, "
    "block_number, transaction_index, log_index, date"
)
_REBALANCE_COLUMNS = (
    "curr_price, amount0_out, amount1_out, token0_fee, token1_fee, curr_price_view, "
    "price_lower_view, price_upper_view, tick_lower, tick_upper, amount0_in, amount1_in, "
    "liquidity, swap_fee, usdc_value, date"
)


def _as_naive_utc(value: date | datetime) -> datetime:
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if value.tzinfo is not None:
        # stored text carries no offset, so everything is kept in UTC
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_store_date(value: date | datetime) -> str:
    return _as_naive_utc(value).strftime(STORE_DATE_FORMAT)


def _prepare_path(database_path: Path | str) -> Path:
    path = Path(database_path).expanduser().resolve()
    if path.parent.exists() and not path.parent.is_dir():
        raise ValueError(f"Database path is not a directory: {path.parent}")
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


class SQLiteEventStore:
    """Event store over a SQLite file holding one pool's history.

    Reads run on a worker thread so the replay loop stays on the event loop;
    every call opens its own connection.
    """

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = _prepare_path(database_path)
        self._closed = False
        self._cache: LRUCache = LRUCache(maxsize=4)
        self._cache_lock = threading.RLock()
        self._logger = get_logger(__name__)
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    @property
    def closed(self) -> bool:
        return self._closed

    def _initialize(self) -> None:
        with self._connect() as con:
            con.execute(CREATE_LIQUIDITY_EVENT_TABLE)
            con.execute(CREATE_LIQUIDITY_EVENT_INDEX)
            con.execute(CREATE_SWAP_EVENT_TABLE)
            con.execute(CREATE_SWAP_EVENT_INDEX)
            con.execute(CREATE_POOL_CONFIG_TABLE)
            con.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError(f"Event store {self._database_path} is closed")

    # -- write side -------------------------------------------------------

    def set_pool_config(self, config: PoolConfig, initial_sqrt_price_x96: int) -> None:
        self._ensure_open()
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO pool_config (id, tick_spacing, token0, token1, fee_amount, initial_sqrt_price_x96)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    tick_spacing = excluded.tick_spacing,
                    token0 = excluded.token0,
                    token1 = excluded.token1,
                    fee_amount = excluded.fee_amount,
                    initial_sqrt_price_x96 = excluded.initial_sqrt_price_x96
                """,
                (
                    config.tick_spacing,
                    config.token0,
                    config.token1,
                    config.fee_amount,
                    str(initial_sqrt_price_x96),
                ),
            )
            con.commit()
        with self._cache_lock:
            self._cache.clear()

    def record_liquidity_events(self, events: Iterable[LiquidityEvent]) -> int:
        self._ensure_open()
        rows = [
            (
                int(event.type),
                str(event.liquidity),
                str(event.amount0),
                str(event.amount1),
                event.tick_lower,
                event.tick_upper,
                event.block_number,
                event.transaction_index,
                event.log_index,
                format_store_date(event.timestamp),
            )
            for event in events
        ]
        with self._connect() as con:
            con.executemany(
                """
                INSERT INTO liquidity_events (
                    type, liquidity, amount0, amount1, tick_lower, tick_upper,
                    block_number, transaction_index, log_index, date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            con.commit()
        return len(rows)

    def record_swap_events(self, events: Iterable[SwapEvent]) -> int:
        self._ensure_open()
        rows = [
            (
                str(event.amount0),
                str(event.amount1),
                str(event.amount_specified),
                str(event.sqrt_price_x96),
                str(event.liquidity),
                event.tick,
                event.block_number,
                event.transaction_index,
                event.log_index,
                format_store_date(event.timestamp),
            )
            for event in events
        ]
        with self._connect() as con:
            con.executemany(
                """
                INSERT INTO swap_events (
                    amount0, amount1, amount_specified, sqrt_price_x96, liquidity, tick,
                    block_number, transaction_index, log_index, date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            con.commit()
        return len(rows)

    # -- read side --------------------------------------------------------

    async def get_liquidity_events_by_date(
        self, kind: EventType, start: date | datetime, end: date | datetime
    ) -> List[LiquidityEvent]:
        if kind not in (EventType.MINT, EventType.BURN):
            raise ValueError(f"Liquidity events are MINT or BURN, not {kind!r}")
        self._ensure_open()
        return await asyncio.to_thread(
            self._query_liquidity_events, kind, format_store_date(start), format_store_date(end)
        )

    async def get_swap_events_by_date(self, start: date | datetime, end: date | datetime) -> List[SwapEvent]:
        self._ensure_open()
        return await asyncio.to_thread(
            self._query_swap_events, format_store_date(start), format_store_date(end)
        )

    async def get_pool_config(self) -> PoolConfig:
        self._ensure_open()
        config, _ = await asyncio.to_thread(self._read_pool_config)
        return config

    async def get_initial_sqrt_price_x96(self) -> int:
        self._ensure_open()
        _, sqrt_price_x96 = await asyncio.to_thread(self._read_pool_config)
        return sqrt_price_x96

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._cache_lock:
            self._cache.clear()
        self._logger.debug("Closed event store %s", self._database_path)

    def _query_liquidity_events(self, kind: EventType, start: str, end: str) -> List[LiquidityEvent]:
        with self._connect() as con:
            cur = con.execute(
                f"""
                SELECT {_LIQUIDITY_COLUMNS} FROM liquidity_events
                WHERE type = ? AND date >= ? AND date < ?
                ORDER BY block_number, log_index
                """,
                (int(kind), start, end),
            )
            rows = cur.fetchall()
        return [self._deserialize_liquidity_event(row) for row in rows]

    def _query_swap_events(self, start: str, end: str) -> List[SwapEvent]:
        with self._connect() as con:
            cur = con.execute(
                f"""
                SELECT {_SWAP_COLUMNS} FROM swap_events
                WHERE date >= ? AND date < ?
                ORDER BY block_number, log_index
                """,
                (start, end),
            )
            rows = cur.fetchall()
        return [self._deserialize_swap_event(row) for row in rows]

    @cachedmethod(lambda self: self._cache, lock=lambda self: self._cache_lock)
    def _read_pool_config(self) -> Tuple[PoolConfig, int]:
        with self._connect() as con:
            cur = con.execute(
                "SELECT tick_spacing, token0, token1, fee_amount, initial_sqrt_price_x96 FROM pool_config WHERE id = 1"
            )
            row = cur.fetchone()
        if row is None:
            raise LookupError(f"No pool config recorded in {self._database_path}")
        config = PoolConfig(tick_spacing=row[0], token0=row[1], token1=row[2], fee_amount=row[3])
        return config, int(row[4])

    @staticmethod
    def _deserialize_liquidity_event(row: Sequence) -> LiquidityEvent:
        return LiquidityEvent(
            id=row[0],
            type=EventType(row[1]),
            liquidity=int(row[2]),
            amount0=int(row[3]),
            amount1=int(row[4]),
            tick_lower=row[5],
            tick_upper=row[6],
            block_number=row[7],
            transaction_index=row[8],
            log_index=row[9],
            timestamp=datetime.fromisoformat(row[10]),
        )

    @staticmethod
    def _deserialize_swap_event(row: Sequence) -> SwapEvent:
        return SwapEvent(
            id=row[0],
            amount0=int(row[1]),
            amount1=int(row[2]),
            amount_specified=int(row[3]),
            sqrt_price_x96=int(row[4]),
            liquidity=int(row[5]),
            tick=row[6],
            block_number=row[7],
            transaction_index=row[8],
            log_index=row[9],
            timestamp=datetime.fromisoformat(row[10]),
        )


class SQLiteRebalanceLogStore:
    """Log sink persisting one row per rebalance decision."""

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = _prepare_path(database_path)
        self._logger = get_logger(__name__)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path, timeout=1.0)
        try:
            yield con
        finally:
            con.close()

    async def init_tables(self) -> None:
        await asyncio.to_thread(self._create_tables)

    async def persist_rebalance_log(self, log: RebalanceLog) -> int:
        row_id = await asyncio.to_thread(self._insert_rebalance_log, log)
        log.id = row_id
        return row_id

    async def list_rebalance_logs(self, limit: Optional[int] = None) -> List[RebalanceLog]:
        return await asyncio.to_thread(self._select_rebalance_logs, limit)

    async def close(self) -> None:
        self._logger.debug("Closed rebalance log store %s", self._database_path)

    def _create_tables(self) -> None:
        with self._connect() as con:
            con.execute(CREATE_REBALANCE_LOG_TABLE)
            con.commit()

    @retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        stop=stop_after_attempt(5),
        reraise=True,
    )
    def _insert_rebalance_log(self, log: RebalanceLog) -> int:
        with self._connect() as con:
            with con:
                cur = con.execute(
                    f"INSERT INTO rebalance_log ({_REBALANCE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        str(log.curr_price),
                        str(log.amount0_out),
                        str(log.amount1_out),
                        str(log.token0_fee),
                        str(log.token1_fee),
                        str(log.curr_price_view),
                        str(log.price_lower_view),
                        str(log.price_upper_view),
                        log.tick_lower,
                        log.tick_upper,
                        str(log.amount0_in),
                        str(log.amount1_in),
                        str(log.liquidity),
                        str(log.swap_fee),
                        str(log.usdc_value),
                        _format_log_date(log.date),
                    ),
                )
            return int(cur.lastrowid)

    def _select_rebalance_logs(self, limit: Optional[int]) -> List[RebalanceLog]:
        query = f"SELECT id, {_REBALANCE_COLUMNS} FROM rebalance_log ORDER BY id"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            RebalanceLog(
                id=row[0],
                curr_price=int(row[1]),
                amount0_out=int(row[2]),
                amount1_out=int(row[3]),
                token0_fee=int(row[4]),
                token1_fee=int(row[5]),
                curr_price_view=int(row[6]),
                price_lower_view=int(row[7]),
                price_upper_view=int(row[8]),
                tick_lower=row[9],
                tick_upper=row[10],
                amount0_in=int(row[11]),
                amount1_in=int(row[12]),
                liquidity=int(row[13]),
                swap_fee=int(row[14]),
                usdc_value=int(row[15]),
                date=datetime.fromisoformat(row[16]),
            )
            for row in rows
        ]


def _format_log_date(value: date | datetime) -> str:
    # millisecond precision
    return _as_naive_utc(value).strftime(LOG_DATE_FORMAT)[:-3]


__all__ = [
    "EventStore",
    "RebalanceLogSink",
    "SQLiteEventStore",
    "SQLiteRebalanceLogStore",
    "StoreClosedError",
    "format_store_date",
]
