"""Merges the per-kind event pages of a window into one replay order."""

from __future__ import annotations

from datetime import datetime
from typing import List, Sequence, Tuple

from ..datalake.schemas import EventType, PoolEvent
from ..datalake.storage import EventStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

_KIND_PRIORITY = {EventType.MINT: 0, EventType.BURN: 1, EventType.SWAP: 2}


def replay_order_key(event: PoolEvent) -> Tuple[int, int, int, int]:
    """Sort key: chain position first, then transaction index and kind for collisions."""

    return (
        event.block_number,
        event.log_index,
        event.transaction_index,
        _KIND_PRIORITY[event.type],
    )


class EventMerger:
    def __init__(self, store: EventStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    async def events_between(self, start: datetime, end: datetime) -> List[PoolEvent]:
        """Return every MINT, BURN and SWAP in ``[start, end)`` in replay order."""

        mints = await self._store.get_liquidity_events_by_date(EventType.MINT, start, end)
        burns = await self._store.get_liquidity_events_by_date(EventType.BURN, start, end)
        swaps = await self._store.get_swap_events_by_date(start, end)
        events: List[PoolEvent] = [*mints, *burns, *swaps]
        events.sort(key=replay_order_key)
        self._report_collisions(events)
        METRICS.increment("merger.events", len(events))
        return events

    def _report_collisions(self, events: Sequence[PoolEvent]) -> None:
        for previous, current in zip(events, events[1:]):
            if (previous.block_number, previous.log_index) != (current.block_number, current.log_index):
                continue
            METRICS.increment("merger.ordering_collisions")
            self._logger.warning(
                "Duplicate event position %s/%s; ordered by transaction index and kind",
                current.block_number,
                current.log_index,
                extra={"first": previous.type.name, "second": current.type.name},
            )


__all__ = ["EventMerger", "replay_order_key"]
