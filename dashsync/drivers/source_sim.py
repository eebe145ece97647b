from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from ..core.errors import SubscriptionLost, TransientFetchError, WriteRejected
from ..domain.models import ControlSnapshot, ControlUpdate, Reading
from .feed import ChangeFeed

logger = logging.getLogger(__name__)


@dataclass
class SimFaults:
    fail_fetches: bool = False
    fail_writes: bool = False
    push_down: bool = False            # refuse new subscriptions
    drop_push_events: bool = False     # silently lose events
    echo_writes: bool = True           # publish a confirmation after each write
    latency_s: float = 0.0


class SimulatedDataSource:
    """In-memory backend with fault injection, for development and tests."""

    def __init__(self, actuator_ids: Iterable[int] = (1, 2), readings: Iterable[Reading] = ()) -> None:
        self._readings: dict[datetime, Reading] = {r.timestamp: r for r in readings}
        self._relays: dict[int, bool] = {i: False for i in actuator_ids}
        self._automatic = True
        self._feed = ChangeFeed()
        self.faults = SimFaults()
        self.write_calls: list[tuple[str, int, bool]] = []
        self.fetch_calls: dict[str, int] = {"readings": 0, "latest": 0, "control": 0}

    # --- backend-side mutation (the device writing rows) ---

    async def insert_reading(self, reading: Reading) -> None:
        self._readings[reading.timestamp] = reading
        if not self.faults.drop_push_events:
            self._feed.publish("readings", reading)

    def set_relay(self, actuator_id: int, state: bool, publish: bool = True) -> None:
        self._relays[actuator_id] = bool(state)
        if publish and not self.faults.drop_push_events:
            self._feed.publish("actuator_state", ControlUpdate("actuator_state", actuator_id, "state", bool(state)))

    def set_automatic(self, automatic: bool, publish: bool = True) -> None:
        self._automatic = bool(automatic)
        if publish and not self.faults.drop_push_events:
            self._feed.publish("mode", ControlUpdate("mode", 1, "automatic", bool(automatic)))

    def drop_push(self) -> int:
        return self._feed.drop_all()

    def subscriber_count(self, table: str) -> int:
        return self._feed.subscriber_count(table)

    def status(self) -> dict:
        return {
            "readings": len(self._readings),
            "relays": dict(self._relays),
            "automatic": self._automatic,
            "faults": self.faults.__dict__,
            "writes": len(self.write_calls),
        }

    # --- DataSource ---

    async def fetch_readings(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> list[Reading]:
        await self._io("readings")
        out = [self._readings[ts] for ts in sorted(self._readings)]
        if since is not None:
            out = [r for r in out if r.timestamp >= since]
        if limit is not None:
            out = out[-limit:] if limit > 0 else []
        return out

    async def fetch_latest_timestamp(self) -> Optional[datetime]:
        await self._io("latest")
        return max(self._readings) if self._readings else None

    async def fetch_control_state(self) -> ControlSnapshot:
        await self._io("control")
        return ControlSnapshot(relays=dict(self._relays), automatic=self._automatic)

    async def subscribe_insert(self, table: str = "readings") -> AsyncIterator[Reading]:
        return self._subscribe(table)

    async def subscribe_update(self, table: str) -> AsyncIterator[ControlUpdate]:
        return self._subscribe(table)

    async def write_actuator_state(self, actuator_id: int, desired_state: bool) -> None:
        self.write_calls.append(("actuator_state", actuator_id, bool(desired_state)))
        await self._write_delay()
        if actuator_id not in self._relays:
            raise WriteRejected(f"relay {actuator_id}", "no such row")
        self.set_relay(actuator_id, desired_state, publish=self.faults.echo_writes)

    async def write_mode(self, automatic: bool) -> None:
        self.write_calls.append(("mode", 1, bool(automatic)))
        await self._write_delay()
        self.set_automatic(automatic, publish=self.faults.echo_writes)

    async def close(self) -> None:
        self._feed.drop_all()

    def _subscribe(self, table: str) -> AsyncIterator:
        if self.faults.push_down:
            raise SubscriptionLost("simulated backend refuses subscriptions")
        return self._feed.subscribe(table)

    async def _io(self, what: str) -> None:
        self.fetch_calls[what] += 1
        if self.faults.latency_s:
            await asyncio.sleep(self.faults.latency_s)
        if self.faults.fail_fetches:
            raise TransientFetchError(f"simulated {what} fetch failure")

    async def _write_delay(self) -> None:
        if self.faults.latency_s:
            await asyncio.sleep(self.faults.latency_s)
        if self.faults.fail_writes:
            raise WriteRejected("backend", "simulated write failure")
