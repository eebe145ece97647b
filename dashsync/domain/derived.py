from __future__ import annotations
from typing import Iterable, Optional, Sequence

from ..core.errors import ConfigurationError
from .models import UNCLASSIFIED, Averages, DerivedView, RangeBand, Reading


def latest(readings: Sequence[Reading]) -> Optional[Reading]:
    return readings[-1] if readings else None


def average(readings: Sequence[Reading], field: str) -> float:
    """Arithmetic mean of ``field``; 0.0 when there is nothing to average."""
    if field not in ("temperature", "humidity"):
        raise ValueError(f"Cannot average field {field!r}")
    values = [getattr(r, field) for r in readings]
    values = [v for v in values if v is not None]
    if not values:
        return 0.0
    return sum(values) / float(len(values))


def validate_bands(bands: Iterable[RangeBand]) -> list[RangeBand]:
    """Return the bands sorted by lower bound, or raise ConfigurationError."""
    ordered = sorted(bands, key=lambda b: b.low)
    for b in ordered:
        if b.low > b.high:
            raise ConfigurationError(f"Band {b.label!r} has low {b.low} above high {b.high}")
    for a, b in zip(ordered, ordered[1:]):
        # Inclusive ranges: touching bounds already overlap
        if b.low <= a.high:
            raise ConfigurationError(
                f"Bands {a.label!r} [{a.low}, {a.high}] and {b.label!r} [{b.low}, {b.high}] overlap"
            )
    return ordered


def classify(temperature: float, bands: Iterable[RangeBand]) -> str:
    for b in bands:
        if b.contains(temperature):
            return b.label
    return UNCLASSIFIED


def compute_view(readings: Sequence[Reading], bands: Sequence[RangeBand]) -> DerivedView:
    last = latest(readings)
    return DerivedView(
        latest=last,
        window_average=Averages(
            temperature=average(readings, "temperature"),
            humidity=average(readings, "humidity"),
        ),
        classification=classify(last.temperature, bands) if last else UNCLASSIFIED,
    )
