from __future__ import annotations

import asyncio

import pytest

from dashsync.core.errors import SubscriptionLost, TransientFetchError
from dashsync.domain.actuators import ActuatorController
from dashsync.domain.retention import RetentionPolicy
from dashsync.domain.store import ReadingStore
from dashsync.drivers.source_sim import SimulatedDataSource
from dashsync.services.adapter import AdapterState
from dashsync.services.bulk_loader import BulkLoader
from dashsync.services.poll_loader import PollLoader
from dashsync.services.push_listener import PushListener

from helpers import r, t, wait_until


def _parts(readings=(), count=10):
    src = SimulatedDataSource(readings=readings)
    store = ReadingStore(RetentionPolicy.count(count))
    ctrl = ActuatorController(src)
    return src, store, ctrl


# --- BulkLoader ---

def test_bulk_load_merges_window_and_control_rows():
    async def scenario():
        src, store, ctrl = _parts([r(i) for i in range(1, 6)], count=3)
        src.set_relay(2, True, publish=False)
        src.set_automatic(False, publish=False)
        bulk = BulkLoader(src, store, ctrl, timeout=1.0)

        assert await bulk.load() == 3
        assert [x.timestamp for x in store.snapshot()] == [t(3), t(4), t(5)]
        assert ctrl.relay(2).confirmed_state is True
        assert ctrl.mode.confirmed_automatic is False
        assert bulk.state is AdapterState.ACTIVE
        assert bulk.loads == 1

    asyncio.run(scenario())


def test_bulk_failure_keeps_existing_data():
    async def scenario():
        src, store, ctrl = _parts([r(5)])
        store.merge([r(1), r(2)])
        src.faults.fail_fetches = True
        bulk = BulkLoader(src, store, ctrl, timeout=1.0)

        with pytest.raises(TransientFetchError):
            await bulk.load()
        assert bulk.state is AdapterState.DEGRADED
        assert [x.timestamp for x in store.snapshot()] == [t(1), t(2)]

    asyncio.run(scenario())


def test_bulk_timeout_is_transient():
    async def scenario():
        src, store, ctrl = _parts([r(1)])
        src.faults.latency_s = 0.5
        bulk = BulkLoader(src, store, ctrl, timeout=0.05)

        with pytest.raises(TransientFetchError):
            await bulk.load()

    asyncio.run(scenario())


def test_bulk_response_after_stop_is_discarded():
    async def scenario():
        src, store, ctrl = _parts([r(1), r(2)])
        src.faults.latency_s = 0.05
        bulk = BulkLoader(src, store, ctrl, timeout=1.0)

        task = asyncio.create_task(bulk.load())
        await asyncio.sleep(0.01)
        await bulk.stop()

        assert await task == 0
        assert store.snapshot() == []
        assert bulk.state is AdapterState.STOPPED

    asyncio.run(scenario())


# --- PollLoader ---

def test_poll_skips_refetch_when_backend_not_newer():
    async def scenario():
        readings = [r(1), r(2), r(3)]
        src, store, ctrl = _parts(readings)
        store.merge(readings)
        poll = PollLoader(src, store, ctrl, timeout=1.0)

        assert await poll.poll_once() is False
        assert src.fetch_calls["latest"] == 1
        assert src.fetch_calls["readings"] == 0
        assert poll.state is AdapterState.ACTIVE

    asyncio.run(scenario())


def test_poll_refetches_when_backend_has_newer():
    async def scenario():
        src, store, ctrl = _parts([r(1), r(2), r(3), r(4)])
        store.merge([r(1), r(2)])
        refetched = []
        poll = PollLoader(src, store, ctrl, timeout=1.0)
        poll.on_refetch(lambda: refetched.append(True))

        assert await poll.poll_once() is True
        assert [x.timestamp for x in store.snapshot()] == [t(1), t(2), t(3), t(4)]
        assert poll.refetches == 1
        assert refetched == [True]

    asyncio.run(scenario())


def test_poll_forced_refetch():
    async def scenario():
        src, store, ctrl = _parts([r(1), r(2), r(3)])
        store.merge([r(3)])
        poll = PollLoader(src, store, ctrl, timeout=1.0)
        poll.request_full_refetch()

        assert await poll.poll_once() is True
        assert len(store) == 3
        assert await poll.poll_once() is False

    asyncio.run(scenario())


def test_poll_confirms_pending_write():
    async def scenario():
        src, store, ctrl = _parts()
        src.faults.echo_writes = False
        ctrl.confirm_mode(False)
        await ctrl.toggle(1)
        assert ctrl.relay(1).pending is True

        poll = PollLoader(src, store, ctrl, timeout=1.0)
        await poll.poll_once()
        state = ctrl.relay(1)
        assert state.pending is False
        assert state.confirmed_state is True

    asyncio.run(scenario())


def test_poll_failure_degrades_then_recovers():
    async def scenario():
        src, store, ctrl = _parts([r(1)])
        poll = PollLoader(src, store, ctrl, timeout=1.0)

        src.faults.fail_fetches = True
        assert await poll.poll_once() is False
        assert poll.state is AdapterState.DEGRADED
        assert poll.last_error

        src.faults.fail_fetches = False
        assert await poll.poll_once() is True
        assert poll.state is AdapterState.ACTIVE
        assert poll.last_error is None

    asyncio.run(scenario())


def test_poll_interval_shortens_while_push_degraded():
    src, store, ctrl = _parts()
    poll = PollLoader(src, store, ctrl, interval=15.0, degraded_interval=3.0)
    assert poll.interval == 15.0
    poll.set_push_degraded(True)
    assert poll.interval == 3.0
    poll.set_push_degraded(False)
    assert poll.interval == 15.0


def test_poll_loop_runs_and_stops():
    async def scenario():
        src, store, ctrl = _parts([r(1)])
        poll = PollLoader(src, store, ctrl, interval=0.01, timeout=1.0)
        await poll.start()
        await wait_until(lambda: len(store) == 1)
        await src.insert_reading(r(2))
        await wait_until(lambda: len(store) == 2)

        await poll.stop()
        probes = poll.probes
        await src.insert_reading(r(3))
        await asyncio.sleep(0.05)
        assert poll.probes == probes
        assert len(store) == 2
        assert poll.state is AdapterState.STOPPED

    asyncio.run(scenario())


# --- PushListener ---

def test_push_merges_events_and_confirms_updates():
    async def scenario():
        src, store, ctrl = _parts()
        push = PushListener(src, store, ctrl, reconnect_delay=0.01)
        await push.start()
        await wait_until(lambda: push.state is AdapterState.ACTIVE)

        await src.insert_reading(r(2))
        await src.insert_reading(r(1))
        await wait_until(lambda: len(store) == 2)
        assert [x.timestamp for x in store.snapshot()] == [t(1), t(2)]

        src.set_relay(1, True)
        src.set_automatic(False)
        await wait_until(lambda: ctrl.relay(1).confirmed_state and not ctrl.mode.confirmed_automatic)

        await push.stop()
        assert push.state is AdapterState.STOPPED
        assert src.subscriber_count("readings") == 0

    asyncio.run(scenario())


def test_push_degrades_and_reconnects():
    async def scenario():
        src, store, ctrl = _parts()
        transitions = []
        push = PushListener(src, store, ctrl, reconnect_delay=0.01)
        push.on_state_change(lambda a, old, new: transitions.append((old, new)))
        await push.start()
        await wait_until(lambda: push.state is AdapterState.ACTIVE)
        await src.insert_reading(r(1))
        await wait_until(lambda: len(store) == 1)

        src.faults.push_down = True
        src.drop_push()
        await wait_until(lambda: push.state is AdapterState.DEGRADED)
        await asyncio.sleep(0.05)
        assert push.state is AdapterState.DEGRADED
        assert len(store) == 1

        src.faults.push_down = False
        await wait_until(lambda: push.state is AdapterState.ACTIVE)
        assert (AdapterState.DEGRADED, AdapterState.ACTIVE) in transitions

        await src.insert_reading(r(2))
        await wait_until(lambda: len(store) == 2)
        await push.stop()

    asyncio.run(scenario())


class ModeFeedDownSource(SimulatedDataSource):
    """Readings and relay feeds open, the mode feed always refuses."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.mode_attempts = 0

    async def subscribe_update(self, table):
        if table == "mode":
            self.mode_attempts += 1
            raise SubscriptionLost("mode feed unavailable")
        return await super().subscribe_update(table)


def test_push_partial_subscribe_releases_opened_feeds():
    async def scenario():
        src = ModeFeedDownSource()
        store = ReadingStore(RetentionPolicy.count(10))
        push = PushListener(src, store, ActuatorController(src), reconnect_delay=0.01)
        await push.start()

        await wait_until(lambda: src.mode_attempts >= 5)
        assert push.state is AdapterState.DEGRADED
        assert src.subscriber_count("readings") <= 1
        assert src.subscriber_count("actuator_state") <= 1

        await push.stop()
        assert push.state is AdapterState.STOPPED
        assert src.subscriber_count("readings") == 0
        assert src.subscriber_count("actuator_state") == 0

    asyncio.run(scenario())


def test_unstarted_subscription_close_unregisters():
    async def scenario():
        src = SimulatedDataSource()
        stream = await src.subscribe_insert("readings")
        assert src.subscriber_count("readings") == 1
        await stream.aclose()
        assert src.subscriber_count("readings") == 0

    asyncio.run(scenario())


class GatedRefetchSource(SimulatedDataSource):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.refetch_started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_readings(self, since=None, limit=None):
        self.refetch_started.set()
        await self.release.wait()
        return await super().fetch_readings(since=since, limit=limit)


def test_poll_refetch_after_stop_is_discarded():
    async def scenario():
        src = GatedRefetchSource(readings=[r(1), r(2)])
        store = ReadingStore(RetentionPolicy.count(10))
        poll = PollLoader(src, store, ActuatorController(src), timeout=1.0)

        task = asyncio.create_task(poll.poll_once())
        await src.refetch_started.wait()
        await poll.stop()
        src.release.set()

        assert await task is False
        assert store.snapshot() == []
        assert poll.refetches == 0
        assert poll.state is AdapterState.STOPPED

    asyncio.run(scenario())
