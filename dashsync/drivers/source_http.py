from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from ..core.errors import SubscriptionLost, TransientFetchError, WriteRejected
from ..core.timeutil import ensure_utc, parse_ts
from ..domain.models import ControlSnapshot, ControlUpdate, Reading

logger = logging.getLogger(__name__)

# Local table name -> backend table name
TABLES = {
    "readings": "sensor_data",
    "actuator_state": "relay_control",
    "mode": "mode_control",
}


class HttpDataSource:
    """Data source for a hosted PostgREST-style backend.

    Reads and writes go through ``/rest/v1/<table>``; changes arrive as
    server-sent events from ``/realtime/v1/stream?table=<table>`` with a
    JSON payload ``{"type": "INSERT"|"UPDATE", "record": {...}}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def fetch_readings(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> list[Reading]:
        params: dict[str, Any] = {
            "select": "temperature,humidity,inserted_at",
            "order": "inserted_at.desc",
        }
        if since is not None:
            params["inserted_at"] = f"gte.{ensure_utc(since).isoformat()}"
        if limit is not None:
            params["limit"] = limit
        rows = await self._get(TABLES["readings"], params)
        out = [r for r in (_parse_reading(row) for row in rows) if r is not None]
        out.reverse()
        return out

    async def fetch_latest_timestamp(self) -> Optional[datetime]:
        rows = await self._get(
            TABLES["readings"],
            {"select": "inserted_at", "order": "inserted_at.desc", "limit": 1},
        )
        if not rows:
            return None
        try:
            return parse_ts(rows[0]["inserted_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientFetchError(f"malformed {TABLES['readings']} row: {rows[0]!r}") from e

    async def fetch_control_state(self) -> ControlSnapshot:
        relay_rows = await self._get(TABLES["actuator_state"], {"select": "id,state"})
        mode_rows = await self._get(TABLES["mode"], {"select": "id,automatic", "id": "eq.1"})
        try:
            return ControlSnapshot(
                relays={int(row["id"]): bool(row["state"]) for row in relay_rows},
                automatic=bool(mode_rows[0]["automatic"]) if mode_rows else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransientFetchError(f"malformed control rows: {e!r}") from e

    async def subscribe_insert(self, table: str = "readings") -> AsyncIterator[Reading]:
        return await self._open_stream(table, "INSERT", _parse_reading)

    async def subscribe_update(self, table: str) -> AsyncIterator[ControlUpdate]:
        if table == "actuator_state":
            parse = _relay_update
        elif table == "mode":
            parse = _mode_update
        else:
            raise SubscriptionLost(f"No update feed for table {table!r}")
        return await self._open_stream(table, "UPDATE", parse)

    async def write_actuator_state(self, actuator_id: int, desired_state: bool) -> None:
        await self._patch(f"relay {actuator_id}", TABLES["actuator_state"], actuator_id, {"state": bool(desired_state)})

    async def write_mode(self, automatic: bool) -> None:
        await self._patch("mode", TABLES["mode"], 1, {"automatic": bool(automatic)})

    async def close(self) -> None:
        await self._client.aclose()

    # --- helpers ---

    async def _get(self, table: str, params: dict[str, Any]) -> list[dict]:
        try:
            resp = await self._client.get(f"/rest/v1/{table}", params=params)
            resp.raise_for_status()
            rows = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientFetchError(f"GET {table} failed: {e}") from e
        if not isinstance(rows, list):
            raise TransientFetchError(f"GET {table} returned {type(rows).__name__}, expected a list of rows")
        return rows

    async def _patch(self, target: str, table: str, row_id: int, body: dict) -> None:
        try:
            resp = await self._client.patch(
                f"/rest/v1/{table}",
                params={"id": f"eq.{row_id}"},
                json=body,
                headers={"Prefer": "return=minimal"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise WriteRejected(target, str(e) or type(e).__name__) from e
        logger.info("PATCH %s id=%s %s", table, row_id, body)

    async def _open_stream(self, table: str, event_type: str, parse: Callable[[dict], Any]) -> "EventStream":
        remote = TABLES.get(table)
        if remote is None:
            raise SubscriptionLost(f"Unknown table {table!r}")
        request = self._client.build_request(
            "GET",
            "/realtime/v1/stream",
            params={"table": remote},
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise SubscriptionLost(f"{remote} stream connect failed: {e}") from e
        if response.status_code >= 400:
            await response.aclose()
            raise SubscriptionLost(f"{remote} stream refused: HTTP {response.status_code}")
        logger.info("Subscribed to %s %s events", remote, event_type)
        return EventStream(response, remote, event_type, parse)


class EventStream:
    """Decoded change events from one open SSE response.

    Owns the response: ``aclose()`` releases it even if iteration never
    started, and it is released when the server ends the stream.
    """

    def __init__(self, response: httpx.Response, remote: str, event_type: str, parse: Callable[[dict], Any]) -> None:
        self._response = response
        self._remote = remote
        self._items = _decode(response, event_type, parse)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self._items.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except httpx.HTTPError as e:
            await self.aclose()
            raise SubscriptionLost(f"{self._remote} stream lost: {e}") from e

    async def aclose(self) -> None:
        await self._items.aclose()
        await self._response.aclose()


async def _decode(response: httpx.Response, event_type: str, parse: Callable[[dict], Any]) -> AsyncIterator:
    async for payload in _sse_payloads(response):
        if payload.get("type") != event_type:
            continue
        item = parse(payload.get("record") or {})
        if item is not None:
            yield item


async def _sse_payloads(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield the JSON ``data`` of each server-sent event."""
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif line == "" and data_lines:
            raw = "\n".join(data_lines)
            data_lines = []
            try:
                payload = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON event: %r", raw[:200])
                continue
            if isinstance(payload, dict):
                yield payload
        # comments (":keepalive") and other fields are ignored


def _parse_reading(row: dict) -> Optional[Reading]:
    try:
        temp = float(row["temperature"])
        hum = row.get("humidity")
        hum = float(hum) if hum is not None else None
        reading = Reading(timestamp=parse_ts(row["inserted_at"]), temperature=temp, humidity=hum)
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed reading row: %r", row)
        return None
    if not math.isfinite(temp) or (hum is not None and not math.isfinite(hum)):
        logger.warning("Skipping non-finite reading row: %r", row)
        return None
    return reading


def _relay_update(row: dict) -> Optional[ControlUpdate]:
    try:
        return ControlUpdate("actuator_state", int(row["id"]), "state", bool(row["state"]))
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed relay update: %r", row)
        return None


def _mode_update(row: dict) -> Optional[ControlUpdate]:
    try:
        return ControlUpdate("mode", int(row.get("id", 1)), "automatic", bool(row["automatic"]))
    except (KeyError, TypeError, ValueError):
        logger.warning("Skipping malformed mode update: %r", row)
        return None
