from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BandSetting(BaseModel):
    label: str
    low: float
    high: float


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="DASHSYNC_", extra="ignore")

    app_name: str = "Greenhouse Live Dashboard"
    timezone: str = "UTC"

    # Data source: "sim", "sqlite" or "http"
    source_mode: str = Field(default="sim")
    sqlite_path: str = Field(default="dashsync.db")
    backend_url: str = "http://127.0.0.1:54321"
    backend_api_key: str = ""

    # Retention: "count" keeps the last N readings, "window" keeps the last D seconds
    retention_mode: str = "count"
    retention_count: int = 60
    retention_window_seconds: float = 3600.0

    # Bulk load (also used for catch-up)
    bulk_timeout_seconds: float = 10.0
    bulk_retry_attempts: int = 3
    bulk_retry_backoff_seconds: float = 1.0

    # Poll fallback
    poll_interval_seconds: float = 15.0
    degraded_poll_interval_seconds: float = 3.0
    fetch_timeout_seconds: float = 5.0

    # Push channel
    push_reconnect_seconds: float = 2.0

    # Command sink
    write_timeout_seconds: float = 5.0

    actuator_ids: list[int] = [1, 2]

    temperature_bands: list[BandSetting] = [
        BandSetting(label="cold", low=0, high=10),
        BandSetting(label="mild", low=11, high=20),
        BandSetting(label="warm", low=21, high=30),
    ]

    # Simulated backend
    sim_sample_seconds: float = 2.0

    log_file: str = "dashsync.log"
    log_level: str = "INFO"


settings = Settings()
