from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..core.config import Settings
from ..core.errors import TransientFetchError, WriteRejected
from ..core.timeutil import ensure_utc, now_utc
from ..domain.actuators import ActuatorController
from ..domain.derived import compute_view, validate_bands
from ..domain.interfaces import DataSource
from ..domain.models import ActuatorState, DerivedView, ModeState, RangeBand, Reading
from ..domain.retention import RetentionPolicy, build_retention
from ..domain.store import ReadingStore
from .adapter import AdapterState, ChannelAdapter
from .bulk_loader import BulkLoader
from .poll_loader import PollLoader
from .push_listener import PushListener

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


@dataclass(frozen=True)
class SyncTimings:
    bulk_timeout: float = 10.0
    bulk_retry_attempts: int = 3
    bulk_retry_backoff: float = 1.0
    poll_interval: float = 15.0
    degraded_poll_interval: float = 3.0
    fetch_timeout: float = 5.0
    push_reconnect: float = 2.0
    write_timeout: float = 5.0

    @classmethod
    def from_settings(cls, s: Settings) -> "SyncTimings":
        return cls(
            bulk_timeout=s.bulk_timeout_seconds,
            bulk_retry_attempts=max(1, s.bulk_retry_attempts),
            bulk_retry_backoff=s.bulk_retry_backoff_seconds,
            poll_interval=s.poll_interval_seconds,
            degraded_poll_interval=s.degraded_poll_interval_seconds,
            fetch_timeout=s.fetch_timeout_seconds,
            push_reconnect=s.push_reconnect_seconds,
            write_timeout=s.write_timeout_seconds,
        )


@dataclass(frozen=True)
class DashboardSnapshot:
    readings: list[Reading]
    derived_view: DerivedView
    actuators: list[ActuatorState]
    mode: ModeState
    loading_state: str  # "idle" | "loading" | "ready" | "error"
    last_error: Optional[str]
    adapters: dict[str, dict]
    date_filter: tuple[Optional[datetime], Optional[datetime]]
    version: int


class ReconciliationCoordinator:
    """Owns the store, the actuator controller and the three channel adapters.

    Startup runs the bulk load to completion (with retries) before push and
    poll are started, so the store never shows a push-only partial window as
    if it were complete.
    """

    def __init__(
        self,
        source: DataSource,
        retention: RetentionPolicy,
        bands: Iterable[RangeBand] = (),
        actuator_ids: Iterable[int] = (1, 2),
        timings: SyncTimings = SyncTimings(),
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._bands = validate_bands(bands)
        self._source = source
        self._timings = timings

        self.store = ReadingStore(retention, clock=clock)
        self.controller = ActuatorController(source, actuator_ids, write_timeout=timings.write_timeout)
        self.bulk = BulkLoader(source, self.store, self.controller, timeout=timings.bulk_timeout, clock=clock)
        self.push = PushListener(
            source, self.store, self.controller,
            reconnect_delay=timings.push_reconnect,
            connect_timeout=timings.fetch_timeout,
        )
        self.poll = PollLoader(
            source, self.store, self.controller,
            interval=timings.poll_interval,
            degraded_interval=timings.degraded_poll_interval,
            timeout=timings.fetch_timeout,
            clock=clock,
        )

        self.loading_state = "idle"
        self.last_error: Optional[str] = None
        self._date_filter: tuple[Optional[datetime], Optional[datetime]] = (None, None)
        self._running = False
        self._catch_up_task: Optional[asyncio.Task] = None
        self._listeners: list[Listener] = []
        self._version = 0

        for adapter in (self.bulk, self.push, self.poll):
            adapter.on_state_change(self._on_adapter_state)
        self.poll.on_refetch(self._on_poll_refetch)
        self.store.add_listener(self._notify)
        self.controller.add_listener(self._notify)

    @classmethod
    def from_settings(cls, source: DataSource, s: Settings) -> "ReconciliationCoordinator":
        retention = build_retention(s.retention_mode, s.retention_count, s.retention_window_seconds)
        bands = [RangeBand(label=b.label, low=b.low, high=b.high) for b in s.temperature_bands]
        return cls(
            source,
            retention,
            bands=bands,
            actuator_ids=s.actuator_ids,
            timings=SyncTimings.from_settings(s),
        )

    @property
    def bands(self) -> list[RangeBand]:
        return list(self._bands)

    # --- lifecycle ---

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("Coordinator starting (retention=%s)", self.store.retention.describe())
        self.bulk.reset()
        self._set_loading("loading")

        loaded = await self._initial_load()
        if not self._running:
            # stop() ran while the initial load was in flight
            return
        if not loaded:
            self.poll.request_full_refetch()

        await self.push.start()
        await self.poll.start()
        logger.info("Coordinator started (loading_state=%s)", self.loading_state)

    async def stop(self) -> None:
        self._running = False
        await self.poll.stop()
        await self.push.stop()
        await self.bulk.stop()

        task, self._catch_up_task = self._catch_up_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Coordinator stopped")

    async def _initial_load(self) -> bool:
        t = self._timings
        last_exc: Optional[Exception] = None
        for attempt in range(1, t.bulk_retry_attempts + 1):
            try:
                await self.bulk.load()
            except TransientFetchError as e:
                last_exc = e
                logger.warning("Initial load attempt %d/%d failed: %s", attempt, t.bulk_retry_attempts, e)
                if attempt < t.bulk_retry_attempts and self._running:
                    await asyncio.sleep(t.bulk_retry_backoff * (2 ** (attempt - 1)))
                if not self._running:
                    return False
                continue
            if self._running:
                self._set_loading("ready")
            return True

        self._set_loading("error")
        self._report_error(f"Initial load failed: {last_exc}")
        return False

    async def catch_up(self) -> bool:
        """Refetch the full window after the push channel comes back."""
        try:
            await self.bulk.load()
        except TransientFetchError as e:
            logger.warning("Catch-up fetch failed, leaving it to the poll loop: %s", e)
            self.poll.request_full_refetch()
            return False
        if self._running:
            self._set_loading("ready")
        return True

    def _schedule_catch_up(self) -> None:
        if not self._running:
            return
        if self._catch_up_task is not None and not self._catch_up_task.done():
            return
        self._catch_up_task = asyncio.create_task(self.catch_up(), name="catch_up")

    def _on_adapter_state(self, adapter: ChannelAdapter, old: AdapterState, new: AdapterState) -> None:
        if adapter is self.push:
            if new is AdapterState.DEGRADED:
                self.poll.set_push_degraded(True)
            elif new is AdapterState.ACTIVE:
                self.poll.set_push_degraded(False)
                if old is AdapterState.DEGRADED:
                    logger.info("Push channel reconnected, scheduling catch-up fetch")
                    self._schedule_catch_up()
        self._notify()

    def _on_poll_refetch(self) -> None:
        if self.loading_state != "ready":
            self._set_loading("ready")

    # --- intents ---

    async def toggle_actuator(self, actuator_id: int) -> ActuatorState:
        try:
            return await self.controller.toggle(actuator_id)
        except WriteRejected as e:
            self._report_error(str(e))
            raise

    async def set_mode(self, automatic: bool) -> ModeState:
        try:
            return await self.controller.set_mode(automatic)
        except WriteRejected as e:
            self._report_error(str(e))
            raise

    def set_date_filter(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> None:
        start = ensure_utc(start) if start is not None else None
        end = ensure_utc(end) if end is not None else None
        if start is not None and end is not None and start > end:
            raise ValueError("Filter start must not be after end")
        self._date_filter = (start, end)
        self._notify()

    def dismiss_error(self) -> None:
        if self.last_error is not None:
            self.last_error = None
            self._notify()

    # --- read side ---

    def snapshot(self) -> DashboardSnapshot:
        start, end = self._date_filter
        readings = self.store.query(start, end)
        self.store.clear_dirty()
        return DashboardSnapshot(
            readings=readings,
            derived_view=compute_view(readings, self._bands),
            actuators=self.controller.relays(),
            mode=self.controller.mode,
            loading_state=self.loading_state,
            last_error=self.last_error,
            adapters={a.name: a.status() for a in (self.bulk, self.push, self.poll)},
            date_filter=self._date_filter,
            version=self._version,
        )

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _set_loading(self, state: str) -> None:
        if state == self.loading_state:
            return
        logger.info("loading_state: %s -> %s", self.loading_state, state)
        self.loading_state = state
        self._notify()

    def _report_error(self, message: str) -> None:
        logger.warning("Surfacing error: %s", message)
        self.last_error = message
        self._notify()

    def _notify(self) -> None:
        self._version += 1
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("Coordinator listener failed")
