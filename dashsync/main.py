from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .core.config import Settings, settings
from .core.errors import ConfigurationError
from .core.log import configure_logging

from .api.routes import router as api_router
import dashsync.api.routes as routes_module

from .domain.interfaces import DataSource
from .drivers.sensors_sim import SimulatedClimateSensor, SimulatedSensorFeed
from .drivers.source_http import HttpDataSource
from .drivers.source_sim import SimulatedDataSource
from .services.coordinator import ReconciliationCoordinator
from .storage.sqlite_source import SQLiteDataSource


logger = logging.getLogger(__name__)


def build_source(s: Settings) -> DataSource:
    mode = s.source_mode.lower()
    if mode == "sim":
        return SimulatedDataSource(actuator_ids=s.actuator_ids)
    if mode == "sqlite":
        return SQLiteDataSource(s.sqlite_path, actuator_ids=s.actuator_ids)
    if mode == "http":
        return HttpDataSource(s.backend_url, api_key=s.backend_api_key, timeout=s.fetch_timeout_seconds)
    raise ConfigurationError(f"Unknown source_mode: {s.source_mode!r} (expected sim, sqlite or http)")


def create_app(s: Settings = settings, source: Optional[DataSource] = None) -> FastAPI:
    source = source if source is not None else build_source(s)
    coordinator = ReconciliationCoordinator.from_settings(source, s)

    # The simulated sensor feeds whichever local backend we own
    sim_sensor: Optional[SimulatedClimateSensor] = None
    feed: Optional[SimulatedSensorFeed] = None
    if isinstance(source, (SimulatedDataSource, SQLiteDataSource)):
        sim_sensor = SimulatedClimateSensor()
        if s.sim_sample_seconds > 0:
            feed = SimulatedSensorFeed(sim_sensor, source, sample_seconds=s.sim_sample_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(s)
        logger.info("Starting %s (source=%s)", s.app_name, s.source_mode)

        if isinstance(source, SQLiteDataSource):
            await source.init()
        if feed is not None:
            await feed.start()
        await coordinator.start()

        try:
            yield
        finally:
            await coordinator.stop()
            if feed is not None:
                await feed.stop()
            await source.close()
            logger.info("Shutdown complete")

    def get_coordinator() -> ReconciliationCoordinator:
        return coordinator

    def get_sim_source() -> SimulatedDataSource:
        if not isinstance(source, SimulatedDataSource):
            raise RuntimeError("Simulated backend not available (source_mode is not 'sim').")
        return source

    def get_sim_sensor() -> SimulatedClimateSensor:
        if sim_sensor is None:
            raise RuntimeError("Simulated sensor not available.")
        return sim_sensor

    app = FastAPI(title=s.app_name, lifespan=lifespan)
    app.state.coordinator = coordinator

    # Make the dependency functions in routes resolve to the real ones
    app.dependency_overrides[routes_module.get_coordinator] = get_coordinator
    app.dependency_overrides[routes_module.get_sim_source] = get_sim_source
    app.dependency_overrides[routes_module.get_sim_sensor] = get_sim_sensor

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
