from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..core.errors import BlockedByMode, UnknownActuator, WriteInProgress, WriteRejected
from ..core.timeutil import now_local
from ..domain.models import ActuatorState, ModeState, Reading
from ..drivers.sensors_sim import ClimateProfile, SimulatedClimateSensor
from ..drivers.source_sim import SimulatedDataSource
from ..services.coordinator import DashboardSnapshot, ReconciliationCoordinator
from .schemas import DateFilterRequest, ModeRequest, SimFaultsRequest, SimProfileRequest

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters ---
# main.py points these at the live objects via app.dependency_overrides.
def get_coordinator() -> ReconciliationCoordinator:  # overridden in main
    raise RuntimeError("Coordinator dependency not configured")

def get_sim_source() -> SimulatedDataSource:  # overridden in main
    raise RuntimeError("Simulated source dependency not configured")

def get_sim_sensor() -> SimulatedClimateSensor:  # overridden in main
    raise RuntimeError("Simulated sensor dependency not configured")


def _reading(r: Optional[Reading]) -> Optional[dict]:
    if r is None:
        return None
    return {"ts_utc": r.timestamp.isoformat(), "temperature": r.temperature, "humidity": r.humidity}


def _actuator(a: ActuatorState) -> dict:
    return {
        "id": a.id,
        "desired_state": a.desired_state,
        "confirmed_state": a.confirmed_state,
        "mode": a.mode,
        "pending": a.pending,
    }


def _mode(m: ModeState) -> dict:
    return {
        "automatic": m.confirmed_automatic,
        "desired_automatic": m.desired_automatic,
        "pending": m.pending,
        "label": m.label,
    }


def _snapshot(snap: DashboardSnapshot) -> dict:
    view = snap.derived_view
    start, end = snap.date_filter
    return {
        "app": settings.app_name,
        "now_local": now_local().isoformat(),
        "version": snap.version,
        "loading_state": snap.loading_state,
        "last_error": snap.last_error,
        "date_filter": {
            "start_utc": start.isoformat() if start else None,
            "end_utc": end.isoformat() if end else None,
        },
        "readings": [_reading(r) for r in snap.readings],
        "derived": {
            "latest": _reading(view.latest),
            "avg_temperature": view.window_average.temperature,
            "avg_humidity": view.window_average.humidity,
            "classification": view.classification,
        },
        "actuators": [_actuator(a) for a in snap.actuators],
        "mode": _mode(snap.mode),
        "adapters": snap.adapters,
    }


@router.get("/snapshot")
async def get_snapshot(coord: ReconciliationCoordinator = Depends(get_coordinator)):
    return _snapshot(coord.snapshot())


@router.post("/actuators/{actuator_id}/toggle")
async def toggle_actuator(actuator_id: int, coord: ReconciliationCoordinator = Depends(get_coordinator)):
    try:
        state = await coord.toggle_actuator(actuator_id)
    except UnknownActuator as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (BlockedByMode, WriteInProgress) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WriteRejected as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "actuator": _actuator(state)}


@router.put("/mode")
async def set_mode(req: ModeRequest, coord: ReconciliationCoordinator = Depends(get_coordinator)):
    try:
        mode = await coord.set_mode(req.automatic)
    except WriteInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WriteRejected as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "mode": _mode(mode)}


@router.put("/filter")
async def set_filter(req: DateFilterRequest, coord: ReconciliationCoordinator = Depends(get_coordinator)):
    try:
        coord.set_date_filter(req.start_utc, req.end_utc)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "count": len(coord.snapshot().readings)}


@router.post("/error/dismiss")
async def dismiss_error(coord: ReconciliationCoordinator = Depends(get_coordinator)):
    coord.dismiss_error()
    return {"ok": True}


# --- Simulation endpoints ---
@router.get("/sim/status")
async def sim_status(
    source: SimulatedDataSource = Depends(get_sim_source),
    sensor: SimulatedClimateSensor = Depends(get_sim_sensor),
):
    return {"backend": source.status(), "sensor": sensor.status()}


@router.post("/sim/push/drop")
async def sim_drop_push(source: SimulatedDataSource = Depends(get_sim_source)):
    dropped = source.drop_push()
    return {"ok": True, "dropped": dropped}


@router.post("/sim/faults")
async def sim_faults(req: SimFaultsRequest, source: SimulatedDataSource = Depends(get_sim_source)):
    for key, value in req.model_dump(exclude_none=True).items():
        setattr(source.faults, key, value)
    logger.info("Simulated faults now %s", source.faults)
    return {"ok": True, "faults": source.faults.__dict__}


@router.post("/sim/pattern")
async def sim_set_profile(req: SimProfileRequest, sensor: SimulatedClimateSensor = Depends(get_sim_sensor)):
    profile = ClimateProfile(**req.model_dump(exclude={"hold_temperature"}))
    sensor.set_profile(profile)
    if req.hold_temperature is not None:
        sensor.hold(req.hold_temperature)
    return {"ok": True, "profile": profile.__dict__}
