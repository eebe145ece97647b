from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..core.errors import TransientFetchError
from ..core.timeutil import ensure_utc, now_utc
from ..domain.actuators import ActuatorController
from ..domain.interfaces import DataSource
from ..domain.store import ReadingStore
from .adapter import AdapterState, TaskAdapter
from .bulk_loader import fetch_window

logger = logging.getLogger(__name__)


class PollLoader(TaskAdapter):
    """Timer-driven fallback: cheap newest-timestamp probe, full refetch only on change.

    Each tick also reads the relay and mode rows so pending commands get
    confirmed even when the push channel is silently dropping events.
    """

    name = "poll"

    def __init__(
        self,
        source: DataSource,
        store: ReadingStore,
        controller: ActuatorController,
        interval: float = 15.0,
        degraded_interval: float = 3.0,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        super().__init__()
        self._source = source
        self._store = store
        self._controller = controller
        self._interval = interval
        self._degraded_interval = degraded_interval
        self._timeout = timeout
        self._clock = clock
        self._wake = asyncio.Event()
        self._push_degraded = False
        self._force_refetch = False
        self._on_refetch: Optional[Callable[[], None]] = None
        self.probes = 0
        self.refetches = 0

    @property
    def interval(self) -> float:
        return self._degraded_interval if self._push_degraded else self._interval

    def on_refetch(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_refetch = callback

    def set_push_degraded(self, degraded: bool) -> None:
        if degraded == self._push_degraded:
            return
        self._push_degraded = degraded
        logger.info("poll: push %s, interval now %.1fs", "degraded" if degraded else "healthy", self.interval)
        self._wake.set()

    def request_full_refetch(self) -> None:
        """Refetch on the next tick regardless of the timestamp probe."""
        self._force_refetch = True
        self._wake.set()

    def poke(self) -> None:
        self._wake.set()

    async def _run(self, gen: int) -> None:
        logger.info("Poll loop started (interval=%.1fs degraded_interval=%.1fs)", self._interval, self._degraded_interval)
        while self.is_current(gen):
            try:
                await self.poll_once(gen)
            except Exception as e:
                logger.exception("Poll loop error: %s", e)

            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Poll loop stopped")

    async def poll_once(self, gen: Optional[int] = None) -> bool:
        """Run one probe. Returns True when a full window refetch was merged."""
        if gen is None:
            gen = self.generation
        self.probes += 1
        token = self._controller.observation_token()
        try:
            latest = await self._bounded(self._source.fetch_latest_timestamp(), "latest timestamp probe")
            control = await self._bounded(self._source.fetch_control_state(), "control state fetch")
        except TransientFetchError as e:
            if self.is_current(gen):
                self._set_state(AdapterState.DEGRADED, str(e))
            return False

        if not self.is_current(gen):
            logger.debug("poll: discarding probe from generation %s", gen)
            return False
        self._controller.apply_control_snapshot(control, token)

        refetched = False
        if self._force_refetch or self._is_newer(latest):
            try:
                readings = await fetch_window(self._source, self._store, self._timeout, self._clock())
            except TransientFetchError as e:
                if self.is_current(gen):
                    self._set_state(AdapterState.DEGRADED, str(e))
                return False
            if not self.is_current(gen):
                logger.debug("poll: discarding refetch from generation %s", gen)
                return False
            self._store.merge(readings)
            self._force_refetch = False
            self.refetches += 1
            refetched = True
            logger.info("poll: backend newest=%s, refetched %d readings", latest, len(readings))

        self._set_state(AdapterState.ACTIVE)
        if refetched and self._on_refetch is not None:
            self._on_refetch()
        return refetched

    def _is_newer(self, latest: Optional[datetime]) -> bool:
        if latest is None:
            return False
        latest = ensure_utc(latest)
        cutoff = self._store.retention.cutoff(self._clock())
        if cutoff is not None and latest < cutoff:
            # Nothing the backend holds would survive retention
            return False
        current = self._store.max_timestamp()
        return current is None or latest > current

    async def _bounded(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"{what} timed out after {self._timeout}s") from e
        except OSError as e:
            raise TransientFetchError(f"{what} failed: {e}") from e
