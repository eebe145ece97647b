from __future__ import annotations
from datetime import datetime
from typing import AsyncIterator, Optional, Protocol, runtime_checkable
from .models import ControlSnapshot, ControlUpdate, Reading


@runtime_checkable
class DataSource(Protocol):
    """Backend the dashboard reads from and writes commands to.

    Fetches raise ``TransientFetchError``. Subscriptions raise
    ``SubscriptionLost`` when they cannot be opened or drop mid-stream.
    Writes raise ``WriteRejected``; a successful write is only acknowledged,
    the new state is confirmed through a subscription or a later fetch.
    """

    async def fetch_readings(
        self, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[Reading]:
        ...

    async def fetch_latest_timestamp(self) -> Optional[datetime]:
        ...

    async def fetch_control_state(self) -> ControlSnapshot:
        ...

    async def subscribe_insert(self, table: str = "readings") -> AsyncIterator[Reading]:
        ...

    async def subscribe_update(self, table: str) -> AsyncIterator[ControlUpdate]:
        ...

    async def write_actuator_state(self, actuator_id: int, desired_state: bool) -> None:
        ...

    async def write_mode(self, automatic: bool) -> None:
        ...

    async def close(self) -> None:
        ...
