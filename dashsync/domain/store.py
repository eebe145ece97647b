from __future__ import annotations
import bisect
import logging
import math
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..core.timeutil import now_utc
from .models import Reading
from .retention import RetentionPolicy

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ReadingStore:
    """Bounded, deduplicated, time-ordered collection of readings.

    Timestamps are unique and strictly increasing. Merging is idempotent and
    commutative, so batches may arrive from any channel in any completion
    order. Retention is enforced at the end of every merge.
    """

    def __init__(self, retention: RetentionPolicy, clock: Callable[[], datetime] = now_utc) -> None:
        self._retention = retention
        self._clock = clock
        self._keys: list[datetime] = []
        self._by_ts: dict[datetime, Reading] = {}
        self._listeners: list[Listener] = []
        self.version = 0
        self.dirty = False

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    def __len__(self) -> int:
        return len(self._keys)

    def merge(self, batch: Iterable[Reading]) -> int:
        """Insert or replace readings keyed by timestamp.

        Returns the number of readings inserted or replaced. Raises
        ``ValueError`` before touching any state when the batch holds an
        invalid reading.
        """
        items = list(batch)
        if not items:
            return 0
        for r in items:
            _validate(r)

        # Within a batch the later occurrence of a timestamp wins
        latest: dict[datetime, Reading] = {}
        for r in items:
            latest[r.timestamp] = r

        changed = 0
        for ts in sorted(latest):
            r = latest[ts]
            existing = self._by_ts.get(ts)
            if existing is None:
                bisect.insort(self._keys, ts)
                changed += 1
            elif existing != r:
                changed += 1
            self._by_ts[ts] = r

        evicted = self._evict()
        if changed or evicted:
            self.version += 1
            self.dirty = True
            logger.debug(
                "merge: batch=%d changed=%d evicted=%d size=%d",
                len(items), changed, evicted, len(self._keys),
            )
            self._notify()
        return changed

    def _evict(self) -> int:
        drop = 0
        if self._retention.max_count is not None:
            drop = max(0, len(self._keys) - self._retention.max_count)
        else:
            cutoff = self._retention.cutoff(self._clock())
            drop = bisect.bisect_left(self._keys, cutoff)
        if drop:
            for ts in self._keys[:drop]:
                del self._by_ts[ts]
            del self._keys[:drop]
        return drop

    def snapshot(self) -> list[Reading]:
        return [self._by_ts[ts] for ts in self._keys]

    def query(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list[Reading]:
        """Readings with ``start <= timestamp <= end``; either bound may be open."""
        lo = 0 if start is None else bisect.bisect_left(self._keys, start)
        hi = len(self._keys) if end is None else bisect.bisect_right(self._keys, end)
        return [self._by_ts[ts] for ts in self._keys[lo:hi]]

    def max_timestamp(self) -> Optional[datetime]:
        return self._keys[-1] if self._keys else None

    def clear_dirty(self) -> None:
        self.dirty = False

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self) -> None:
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("Store listener failed")


def _validate(r: Reading) -> None:
    if not isinstance(r, Reading):
        raise ValueError(f"Not a Reading: {r!r}")
    if r.timestamp.tzinfo is None:
        raise ValueError(f"Reading timestamp must be timezone-aware: {r.timestamp!r}")
    if not math.isfinite(r.temperature):
        raise ValueError(f"Reading temperature must be finite: {r.temperature!r}")
    if r.humidity is not None and not math.isfinite(r.humidity):
        raise ValueError(f"Reading humidity must be finite: {r.humidity!r}")
