from __future__ import annotations
import asyncio
import enum
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AdapterState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPED = "stopped"


StateListener = Callable[["ChannelAdapter", AdapterState, AdapterState], None]


class ChannelAdapter:
    """Lifecycle shared by the bulk, push and poll channels.

    ``generation`` is bumped on every start and stop. Code that awaits I/O
    captures it first and drops the result when it no longer matches, so a
    response that lands after a stop or restart is never merged.
    """

    name = "adapter"

    def __init__(self) -> None:
        self.state = AdapterState.IDLE
        self.generation = 0
        self.last_error: Optional[str] = None
        self._on_state: Optional[StateListener] = None

    def on_state_change(self, callback: Optional[StateListener]) -> None:
        self._on_state = callback

    def is_current(self, generation: int) -> bool:
        return generation == self.generation and self.state is not AdapterState.STOPPED

    def _next_generation(self) -> int:
        self.generation += 1
        return self.generation

    def _set_state(self, new: AdapterState, error: Optional[str] = None) -> None:
        old = self.state
        if new is AdapterState.ACTIVE:
            self.last_error = None
        elif error is not None:
            self.last_error = error
        if old is new:
            return
        self.state = new
        if new is AdapterState.DEGRADED:
            logger.warning("%s: %s -> %s (%s)", self.name, old.value, new.value, error)
        else:
            logger.info("%s: %s -> %s", self.name, old.value, new.value)
        if self._on_state is not None:
            self._on_state(self, old, new)

    def status(self) -> dict:
        return {"state": self.state.value, "generation": self.generation, "last_error": self.last_error}


class TaskAdapter(ChannelAdapter):
    """Adapter backed by one long-lived asyncio task."""

    def __init__(self) -> None:
        super().__init__()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        gen = self._next_generation()
        self._set_state(AdapterState.STARTING)
        self._task = asyncio.create_task(self._run(gen), name=f"{self.name}_loop")

    async def stop(self) -> None:
        self._next_generation()
        self._set_state(AdapterState.STOPPED)
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("%s: task failed during shutdown", self.name)

    async def _run(self, gen: int) -> None:
        raise NotImplementedError
