from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class Reading:
    timestamp: datetime
    temperature: float
    humidity: Optional[float] = None


@dataclass(frozen=True)
class ControlUpdate:
    table: str  # "actuator_state" | "mode"
    id: int
    field: str
    value: Any


@dataclass(frozen=True)
class ControlSnapshot:
    relays: dict[int, bool] = field(default_factory=dict)
    automatic: Optional[bool] = None


@dataclass(frozen=True)
class ActuatorState:
    id: int
    desired_state: bool
    confirmed_state: bool
    mode: str  # "automatic" | "manual"
    pending: bool


@dataclass(frozen=True)
class ModeState:
    desired_automatic: bool
    confirmed_automatic: bool
    pending: bool

    @property
    def label(self) -> str:
        return "automatic" if self.confirmed_automatic else "manual"


@dataclass(frozen=True)
class RangeBand:
    label: str
    low: float
    high: float

    def contains(self, value: float) -> bool:
        return self.low <= value <= self.high


UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class Averages:
    temperature: float
    humidity: float


@dataclass(frozen=True)
class DerivedView:
    latest: Optional[Reading]
    window_average: Averages
    classification: str
