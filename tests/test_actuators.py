from __future__ import annotations

import asyncio

import pytest

from dashsync.core.errors import BlockedByMode, UnknownActuator, WriteInProgress, WriteRejected
from dashsync.domain.actuators import ActuatorController
from dashsync.domain.models import ControlSnapshot
from dashsync.drivers.source_sim import SimulatedDataSource


def _manual_controller(**kwargs):
    src = SimulatedDataSource()
    src.faults.echo_writes = False
    ctrl = ActuatorController(src, **kwargs)
    ctrl.confirm_mode(False)
    return src, ctrl


class GatedSink:
    """Command sink whose writes block until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = []

    async def write_actuator_state(self, actuator_id, desired_state):
        self.calls.append((actuator_id, desired_state))
        await self.release.wait()

    async def write_mode(self, automatic):
        self.calls.append(("mode", automatic))
        await self.release.wait()


def test_defaults_are_automatic_and_off():
    ctrl = ActuatorController(SimulatedDataSource())
    assert ctrl.mode.confirmed_automatic is True
    assert [(a.id, a.desired_state, a.confirmed_state, a.pending) for a in ctrl.relays()] == [
        (1, False, False, False),
        (2, False, False, False),
    ]
    assert ctrl.relay(1).mode == "automatic"


def test_toggle_blocked_in_automatic_mode():
    async def scenario():
        src = SimulatedDataSource()
        ctrl = ActuatorController(src)
        before = ctrl.relay(1)

        with pytest.raises(BlockedByMode):
            await ctrl.toggle(1)

        assert ctrl.relay(1) == before
        assert src.write_calls == []

    asyncio.run(scenario())


def test_unknown_actuator():
    async def scenario():
        _, ctrl = _manual_controller()
        with pytest.raises(UnknownActuator):
            await ctrl.toggle(7)

    asyncio.run(scenario())


def test_write_failure_rolls_back():
    async def scenario():
        src, ctrl = _manual_controller()
        src.faults.fail_writes = True

        with pytest.raises(WriteRejected):
            await ctrl.toggle(1)

        state = ctrl.relay(1)
        assert state.desired_state is False
        assert state.confirmed_state is False
        assert state.pending is False
        assert len(src.write_calls) == 1

    asyncio.run(scenario())


def test_second_toggle_rejected_while_pending():
    async def scenario():
        src, ctrl = _manual_controller()

        first = await ctrl.toggle(1)
        assert first.pending is True
        assert first.desired_state is True

        with pytest.raises(WriteInProgress):
            await ctrl.toggle(1)
        assert len(src.write_calls) == 1

        # the other relay is independent
        await ctrl.toggle(2)
        assert len(src.write_calls) == 2

    asyncio.run(scenario())


def test_concurrent_toggles_single_write():
    async def scenario():
        src, ctrl = _manual_controller()
        results = await asyncio.gather(ctrl.toggle(1), ctrl.toggle(1), return_exceptions=True)

        assert sum(isinstance(x, WriteInProgress) for x in results) == 1
        assert src.write_calls == [("actuator_state", 1, True)]

    asyncio.run(scenario())


def test_confirmation_clears_pending():
    async def scenario():
        _, ctrl = _manual_controller()
        await ctrl.toggle(1)
        ctrl.confirm_relay(1, True)

        state = ctrl.relay(1)
        assert state.pending is False
        assert state.confirmed_state is True
        assert state.desired_state is True

    asyncio.run(scenario())


def test_confirmed_value_wins_over_desired():
    async def scenario():
        _, ctrl = _manual_controller()
        await ctrl.toggle(1)
        # another client switched it back before our write landed
        ctrl.confirm_relay(1, False)

        state = ctrl.relay(1)
        assert state.pending is False
        assert state.desired_state is False
        assert state.confirmed_state is False

    asyncio.run(scenario())


def test_observation_taken_before_write_does_not_resolve():
    async def scenario():
        _, ctrl = _manual_controller()
        token = ctrl.observation_token()
        await ctrl.toggle(1)

        ctrl.apply_control_snapshot(ControlSnapshot(relays={1: False}), token)
        state = ctrl.relay(1)
        assert state.pending is True
        assert state.desired_state is True

        ctrl.confirm_relay(1, True)
        assert ctrl.relay(1).pending is False

        # a late stale poll result cannot undo the confirmation
        ctrl.apply_control_snapshot(ControlSnapshot(relays={1: False}), token)
        assert ctrl.relay(1).confirmed_state is True

    asyncio.run(scenario())


def test_matching_confirmation_before_ack():
    async def scenario():
        sink = GatedSink()
        ctrl = ActuatorController(sink)
        ctrl.confirm_mode(False)

        task = asyncio.create_task(ctrl.toggle(1))
        await asyncio.sleep(0)
        assert ctrl.relay(1).pending is True

        # a stale mismatching value seen while the write is in flight is not final
        ctrl.confirm_relay(1, False)
        assert ctrl.relay(1).pending is True

        ctrl.confirm_relay(1, True)
        assert ctrl.relay(1).pending is False

        sink.release.set()
        state = await task
        assert state.pending is False
        assert state.desired_state is True

    asyncio.run(scenario())


def test_write_timeout_rolls_back():
    async def scenario():
        sink = GatedSink()
        ctrl = ActuatorController(sink, write_timeout=0.05)
        ctrl.confirm_mode(False)

        with pytest.raises(WriteRejected):
            await ctrl.toggle(2)
        state = ctrl.relay(2)
        assert state.pending is False
        assert state.desired_state is False

    asyncio.run(scenario())


def test_external_change_updates_idle_relay():
    _, ctrl = _manual_controller()
    ctrl.confirm_relay(2, True)
    state = ctrl.relay(2)
    assert state.desired_state is True
    assert state.confirmed_state is True
    assert state.pending is False


def test_unknown_relay_confirmation_ignored():
    _, ctrl = _manual_controller()
    ctrl.confirm_relay(9, True)
    assert [a.id for a in ctrl.relays()] == [1, 2]


def test_mode_change_in_flight_blocks_toggles():
    async def scenario():
        sink = GatedSink()
        ctrl = ActuatorController(sink)
        ctrl.confirm_mode(False)

        task = asyncio.create_task(ctrl.set_mode(True))
        await asyncio.sleep(0)
        assert ctrl.mode.pending is True

        with pytest.raises(BlockedByMode):
            await ctrl.toggle(1)
        with pytest.raises(WriteInProgress):
            await ctrl.set_mode(False)

        sink.release.set()
        await task
        ctrl.confirm_mode(True)
        assert ctrl.mode.pending is False
        assert ctrl.mode.confirmed_automatic is True
        assert sink.calls == [("mode", True)]

    asyncio.run(scenario())


def test_mode_write_failure_rolls_back():
    async def scenario():
        src = SimulatedDataSource()
        src.faults.fail_writes = True
        ctrl = ActuatorController(src)

        with pytest.raises(WriteRejected):
            await ctrl.set_mode(False)
        assert ctrl.mode.desired_automatic is True
        assert ctrl.mode.pending is False

    asyncio.run(scenario())


def test_listener_sees_pending_then_rollback():
    async def scenario():
        src, ctrl = _manual_controller()
        src.faults.fail_writes = True
        seen = []
        ctrl.add_listener(lambda: seen.append(ctrl.relay(1).pending))

        with pytest.raises(WriteRejected):
            await ctrl.toggle(1)
        assert seen == [True, False]

    asyncio.run(scenario())
