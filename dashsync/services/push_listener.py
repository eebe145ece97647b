from __future__ import annotations
import asyncio
import logging
from typing import AsyncIterator

from ..core.errors import SubscriptionLost, TransientFetchError
from ..domain.actuators import ActuatorController
from ..domain.interfaces import DataSource
from ..domain.models import ControlUpdate, Reading
from ..domain.store import ReadingStore
from .adapter import AdapterState, TaskAdapter

logger = logging.getLogger(__name__)


class PushListener(TaskAdapter):
    """Long-lived subscription to reading inserts and relay/mode updates.

    On loss the adapter goes degraded and keeps resubscribing. Coming back
    to active after a loss is the coordinator's cue to run a catch-up fetch;
    events missed while disconnected are never assumed to be replayed.
    """

    name = "push"

    def __init__(
        self,
        source: DataSource,
        store: ReadingStore,
        controller: ActuatorController,
        reconnect_delay: float = 2.0,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._source = source
        self._store = store
        self._controller = controller
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout
        self.events = 0

    async def _run(self, gen: int) -> None:
        logger.info("Push listener started (generation=%s)", gen)
        while self.is_current(gen):
            try:
                await self._listen(gen)
            except (SubscriptionLost, TransientFetchError, OSError, asyncio.TimeoutError) as e:
                if not self.is_current(gen):
                    break
                self._set_state(AdapterState.DEGRADED, str(e) or type(e).__name__)
            except Exception as e:
                if not self.is_current(gen):
                    break
                logger.exception("Push listener error: %s", e)
                self._set_state(AdapterState.DEGRADED, str(e) or type(e).__name__)

            if self.is_current(gen):
                await asyncio.sleep(self._reconnect_delay)
        logger.info("Push listener stopped (generation=%s)", gen)

    async def _listen(self, gen: int) -> None:
        streams: list[AsyncIterator] = []
        try:
            streams.append(await self._subscribe(self._source.subscribe_insert("readings")))
            streams.append(await self._subscribe(self._source.subscribe_update("actuator_state")))
            streams.append(await self._subscribe(self._source.subscribe_update("mode")))
            if not self.is_current(gen):
                return
            self._set_state(AdapterState.ACTIVE)

            tasks = [
                asyncio.create_task(self._consume_readings(streams[0], gen)),
                asyncio.create_task(self._consume_updates(streams[1], gen)),
                asyncio.create_task(self._consume_updates(streams[2], gen)),
            ]
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    raise t.exception()
            if self.is_current(gen):
                raise SubscriptionLost("change stream closed by server")
        finally:
            for s in streams:
                await _close(s)

    async def _subscribe(self, coro) -> AsyncIterator:
        return await asyncio.wait_for(coro, timeout=self._connect_timeout)

    async def _consume_readings(self, stream: AsyncIterator[Reading], gen: int) -> None:
        async for reading in stream:
            if not self.is_current(gen):
                return
            self.events += 1
            try:
                self._store.merge([reading])
            except ValueError as e:
                logger.warning("push: dropping malformed reading: %s", e)

    async def _consume_updates(self, stream: AsyncIterator[ControlUpdate], gen: int) -> None:
        async for update in stream:
            if not self.is_current(gen):
                return
            self.events += 1
            token = self._controller.observation_token()
            if update.table == "actuator_state" and update.field == "state":
                self._controller.confirm_relay(update.id, bool(update.value), token)
            elif update.table == "mode" and update.field == "automatic":
                self._controller.confirm_mode(bool(update.value), token)
            else:
                logger.debug("push: ignoring update %s", update)


async def _close(stream: AsyncIterator) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("push: error closing stream", exc_info=True)
