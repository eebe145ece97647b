from __future__ import annotations
import asyncio
import logging
from typing import Any

from ..core.errors import SubscriptionLost

logger = logging.getLogger(__name__)

_DROP = object()


class Subscription:
    """Async iterator over one table's change events.

    The queue is registered on creation and released by ``aclose()``, by a
    drop, or when the feed is torn down, whether or not iteration started.
    """

    def __init__(self, feed: "ChangeFeed", table: str, queue: asyncio.Queue) -> None:
        self._feed = feed
        self._table = table
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DROP:
            self._release()
            raise SubscriptionLost(f"{self._table} subscription dropped")
        return item

    async def aclose(self) -> None:
        self._release()

    def _release(self) -> None:
        self._closed = True
        self._feed._discard(self._table, self._queue)


class ChangeFeed:
    """In-process fan-out of change events to per-table subscriber queues."""

    def __init__(self, tables: tuple[str, ...] = ("readings", "actuator_state", "mode")) -> None:
        self._subs: dict[str, set[asyncio.Queue]] = {t: set() for t in tables}

    def subscriber_count(self, table: str) -> int:
        return len(self._subs.get(table, ()))

    def subscribe(self, table: str) -> Subscription:
        if table not in self._subs:
            raise SubscriptionLost(f"Unknown table: {table}")
        q: asyncio.Queue = asyncio.Queue()
        self._subs[table].add(q)
        return Subscription(self, table, q)

    def publish(self, table: str, item: Any) -> None:
        for q in list(self._subs.get(table, ())):
            q.put_nowait(item)

    def drop_all(self) -> int:
        """Terminate every open subscription with SubscriptionLost."""
        n = 0
        for table, queues in self._subs.items():
            for q in list(queues):
                q.put_nowait(_DROP)
                n += 1
            queues.clear()
        if n:
            logger.warning("Dropped %d open subscriptions", n)
        return n

    def _discard(self, table: str, q: asyncio.Queue) -> None:
        self._subs.get(table, set()).discard(q)
