from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from ..core.errors import TransientFetchError
from ..core.timeutil import now_utc
from ..domain.actuators import ActuatorController
from ..domain.interfaces import DataSource
from ..domain.models import Reading
from ..domain.store import ReadingStore
from .adapter import AdapterState, ChannelAdapter

logger = logging.getLogger(__name__)


async def fetch_window(
    source: DataSource,
    store: ReadingStore,
    timeout: float,
    now: datetime,
) -> list[Reading]:
    """Fetch every reading the store's retention policy would keep."""
    since, limit = store.retention.fetch_bounds(now)
    try:
        return await asyncio.wait_for(source.fetch_readings(since=since, limit=limit), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientFetchError(f"window fetch timed out after {timeout}s") from e
    except OSError as e:
        raise TransientFetchError(f"window fetch failed: {e}") from e


class BulkLoader(ChannelAdapter):
    """One-shot fetch of the full retained window plus relay and mode rows.

    Runs at startup and again for every catch-up after the push channel
    reconnects.
    """

    name = "bulk"

    def __init__(
        self,
        source: DataSource,
        store: ReadingStore,
        controller: ActuatorController,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        super().__init__()
        self._source = source
        self._store = store
        self._controller = controller
        self._timeout = timeout
        self._clock = clock
        self.loads = 0
        self.last_loaded_at: Optional[datetime] = None

    def reset(self) -> None:
        self._next_generation()
        self._set_state(AdapterState.IDLE)

    async def stop(self) -> None:
        self._next_generation()
        self._set_state(AdapterState.STOPPED)

    async def load(self) -> int:
        """Fetch and merge the full window. Returns the number of readings changed.

        Raises ``TransientFetchError`` on failure or timeout; already merged
        data is kept.
        """
        if self.state is AdapterState.STOPPED:
            logger.debug("bulk: load requested after stop, ignoring")
            return 0
        gen = self.generation
        if self.state is AdapterState.IDLE:
            self._set_state(AdapterState.STARTING)

        token = self._controller.observation_token()
        try:
            readings = await fetch_window(self._source, self._store, self._timeout, self._clock())
            control = await self._fetch_control()
        except TransientFetchError as e:
            if self.is_current(gen):
                self._set_state(AdapterState.DEGRADED, str(e))
            raise

        if not self.is_current(gen):
            logger.debug("bulk: discarding response from generation %s", gen)
            return 0

        changed = self._store.merge(readings)
        self._controller.apply_control_snapshot(control, token)
        self.loads += 1
        self.last_loaded_at = self._clock()
        self._set_state(AdapterState.ACTIVE)
        logger.info("bulk: loaded %d readings (%d changed, store=%d)", len(readings), changed, len(self._store))
        return changed

    async def _fetch_control(self):
        try:
            return await asyncio.wait_for(self._source.fetch_control_state(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"control state fetch timed out after {self._timeout}s") from e
        except OSError as e:
            raise TransientFetchError(f"control state fetch failed: {e}") from e
