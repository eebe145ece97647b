from __future__ import annotations
import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

from ..domain.models import Reading
from ..core.timeutil import now_utc

logger = logging.getLogger(__name__)

ClimateKind = Literal["fixed", "daily", "drift"]


@dataclass
class ClimateProfile:
    """Shape of the simulated room climate.

    ``daily`` swings temperature over a compressed day of ``day_seconds``;
    ``drift`` wanders randomly inside the same band; ``fixed`` holds the
    mean (or the value given to ``hold``). Relative humidity moves opposite
    to temperature.
    """

    kind: ClimateKind = "daily"
    mean_temp: float = 18.0
    temp_swing: float = 6.0
    day_seconds: float = 600.0
    mean_humidity: float = 55.0
    humidity_swing: float = 10.0
    jitter: float = 0.3


class ReadingSink(Protocol):
    async def insert_reading(self, reading: Reading) -> None:
        ...


class SimulatedClimateSensor:
    sensor_id = "climate_sim_01"

    def __init__(self, profile: Optional[ClimateProfile] = None, rng: Optional[random.Random] = None) -> None:
        self._enabled = True
        self._held: Optional[float] = None
        self._profile = profile or ClimateProfile()
        self._rng = rng or random.Random()
        self._drift = 0.0
        self._t0 = now_utc()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def profile(self) -> ClimateProfile:
        return self._profile

    def hold(self, temperature: float) -> None:
        self._profile.kind = "fixed"
        self._held = float(temperature)

    def set_profile(self, profile: ClimateProfile) -> None:
        self._profile = profile
        self._drift = 0.0
        if profile.kind != "fixed":
            self._held = None

    def status(self) -> dict:
        return {
            "enabled": self._enabled,
            "held_temperature": self._held,
            "profile": self._profile.__dict__,
        }

    def _deviation(self, elapsed: float) -> float:
        """Where the climate sits in its band, from -1 (coolest) to 1 (warmest)."""
        p = self._profile
        if p.kind == "daily":
            return math.sin(2 * math.pi * elapsed / max(p.day_seconds, 1.0))
        if p.kind == "drift":
            self._drift = min(1.0, max(-1.0, self._drift + self._rng.gauss(0.0, 0.1)))
            return self._drift
        return 0.0

    def read(self) -> Reading:
        p = self._profile
        ts = now_utc()
        dev = self._deviation((ts - self._t0).total_seconds())
        if p.kind == "fixed" and self._held is not None:
            temp = self._held
        else:
            temp = p.mean_temp + p.temp_swing * dev
        hum = p.mean_humidity - p.humidity_swing * dev
        if p.jitter:
            temp += self._rng.uniform(-p.jitter, p.jitter)
            hum += self._rng.uniform(-p.jitter, p.jitter)
        return Reading(timestamp=ts, temperature=round(temp, 2), humidity=round(min(100.0, max(0.0, hum)), 2))


class SimulatedSensorFeed:
    """Writes a simulated reading into a backend every ``sample_seconds``."""

    def __init__(self, sensor: SimulatedClimateSensor, sink: ReadingSink, sample_seconds: float = 2.0) -> None:
        self._sensor = sensor
        self._sink = sink
        self._sample_seconds = sample_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="sim_sensor_feed")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info("Simulated sensor feed started (sample_seconds=%s)", self._sample_seconds)
        while not self._stop.is_set():
            if self._sensor.enabled:
                try:
                    await self._sink.insert_reading(self._sensor.read())
                except Exception as e:
                    logger.exception("Simulated sensor feed error: %s", e)

            # sleep with cancellation awareness
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._sample_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Simulated sensor feed stopped")
