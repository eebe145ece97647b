from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from ..core.errors import BlockedByMode, UnknownActuator, WriteInProgress, WriteRejected
from .interfaces import DataSource
from .models import ActuatorState, ControlSnapshot, ModeState

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


@dataclass
class _Slot:
    """Desired/confirmed pair plus the bookkeeping for one in-flight write.

    ``issued_at``, ``acked_at`` and ``seen_at`` are observation tokens:
    when the last write was sent, when the sink acknowledged it, and the
    newest external observation applied so far.
    """

    desired: bool
    confirmed: bool
    pending: bool = False
    issued_at: int = 0
    acked_at: Optional[int] = None
    seen_at: int = 0


class ActuatorController:
    """Optimistic command / confirm / rollback for relays and the mode flag.

    Relay toggles are only accepted while the confirmed mode is manual and no
    mode change is in flight. A second command on the same target while one
    is pending is rejected, never queued.
    """

    def __init__(
        self,
        sink: DataSource,
        actuator_ids: Iterable[int] = (1, 2),
        write_timeout: float = 5.0,
    ) -> None:
        self._sink = sink
        self._write_timeout = write_timeout
        self._relays: dict[int, _Slot] = {i: _Slot(desired=False, confirmed=False) for i in actuator_ids}
        self._mode = _Slot(desired=True, confirmed=True)
        self._tick = 0
        self._listeners: list[Listener] = []

    # --- read side ---

    def relay(self, actuator_id: int) -> ActuatorState:
        slot = self._slot(actuator_id)
        return ActuatorState(
            id=actuator_id,
            desired_state=slot.desired,
            confirmed_state=slot.confirmed,
            mode=self.mode.label,
            pending=slot.pending,
        )

    def relays(self) -> list[ActuatorState]:
        return [self.relay(i) for i in sorted(self._relays)]

    @property
    def mode(self) -> ModeState:
        return ModeState(
            desired_automatic=self._mode.desired,
            confirmed_automatic=self._mode.confirmed,
            pending=self._mode.pending,
        )

    def observation_token(self) -> int:
        """Take a token before starting a fetch (or on receiving a push event)."""
        self._tick += 1
        return self._tick

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    # --- commands ---

    async def toggle(self, actuator_id: int) -> ActuatorState:
        slot = self._slot(actuator_id)
        if self._mode.confirmed or self._mode.pending:
            logger.info("toggle relay %s blocked: mode=%s pending=%s",
                        actuator_id, self.mode.label, self._mode.pending)
            raise BlockedByMode(actuator_id)
        target = f"relay {actuator_id}"
        if slot.pending:
            raise WriteInProgress(target)

        new_state = not slot.desired
        await self._write(target, slot, new_state, lambda: self._sink.write_actuator_state(actuator_id, new_state))
        return self.relay(actuator_id)

    async def set_mode(self, automatic: bool) -> ModeState:
        if self._mode.pending:
            raise WriteInProgress("mode")
        await self._write("mode", self._mode, bool(automatic), lambda: self._sink.write_mode(bool(automatic)))
        return self.mode

    async def _write(
        self,
        target: str,
        slot: _Slot,
        value: bool,
        call: Callable[[], Awaitable[None]],
    ) -> None:
        slot.desired = value
        slot.pending = True
        slot.acked_at = None
        slot.issued_at = issued = self.observation_token()
        logger.info("%s: command %s sent (confirmed=%s)", target, _on_off(value), _on_off(slot.confirmed))
        self._notify()

        try:
            await asyncio.wait_for(call(), timeout=self._write_timeout)
        except asyncio.CancelledError:
            self._rollback(target, slot, issued)
            raise
        except asyncio.TimeoutError as e:
            self._rollback(target, slot, issued)
            raise WriteRejected(target, f"write timed out after {self._write_timeout}s") from e
        except WriteRejected:
            self._rollback(target, slot, issued)
            raise
        except Exception as e:
            self._rollback(target, slot, issued)
            raise WriteRejected(target, str(e) or type(e).__name__) from e

        if slot.pending and slot.issued_at == issued:
            slot.acked_at = self.observation_token()
            logger.info("%s: write acknowledged, awaiting confirmation", target)

    def _rollback(self, target: str, slot: _Slot, issued: int) -> None:
        if slot.issued_at != issued:
            return
        logger.warning("%s: write failed, rolling back to %s", target, _on_off(slot.confirmed))
        slot.desired = slot.confirmed
        slot.pending = False
        slot.acked_at = None
        self._notify()

    # --- external observations ---

    def confirm_relay(self, actuator_id: int, value: bool, token: Optional[int] = None) -> None:
        slot = self._relays.get(actuator_id)
        if slot is None:
            logger.debug("Ignoring state for untracked relay %s", actuator_id)
            return
        if self._observe(f"relay {actuator_id}", slot, bool(value), token):
            self._notify()

    def confirm_mode(self, automatic: bool, token: Optional[int] = None) -> None:
        if self._observe("mode", self._mode, bool(automatic), token):
            self._notify()

    def apply_control_snapshot(self, snap: ControlSnapshot, token: int) -> None:
        changed = False
        if snap.automatic is not None:
            changed |= self._observe("mode", self._mode, snap.automatic, token)
        for actuator_id, value in snap.relays.items():
            slot = self._relays.get(actuator_id)
            if slot is not None:
                changed |= self._observe(f"relay {actuator_id}", slot, bool(value), token)
        if changed:
            self._notify()

    def _observe(self, target: str, slot: _Slot, value: bool, token: Optional[int]) -> bool:
        if token is None:
            token = self.observation_token()
        if token < slot.seen_at:
            logger.debug("%s: dropping stale observation (token %s < %s)", target, token, slot.seen_at)
            return False
        slot.seen_at = token
        before = (slot.desired, slot.confirmed, slot.pending)
        slot.confirmed = value

        if not slot.pending:
            slot.desired = value
        elif value == slot.desired and token > slot.issued_at:
            slot.pending = False
            logger.info("%s: confirmed %s", target, _on_off(value))
        elif slot.acked_at is not None and token > slot.acked_at:
            # Backend disagrees after accepting the write; its value wins
            logger.warning("%s: confirmed %s, expected %s", target, _on_off(value), _on_off(slot.desired))
            slot.desired = value
            slot.pending = False

        return (slot.desired, slot.confirmed, slot.pending) != before

    def _slot(self, actuator_id: int) -> _Slot:
        slot = self._relays.get(actuator_id)
        if slot is None:
            raise UnknownActuator(actuator_id)
        return slot

    def _notify(self) -> None:
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("Actuator listener failed")


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"
