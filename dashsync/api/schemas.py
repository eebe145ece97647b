from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Literal, Optional


class ModeRequest(BaseModel):
    automatic: bool


class DateFilterRequest(BaseModel):
    start_utc: Optional[datetime] = None
    end_utc: Optional[datetime] = None


class SimFaultsRequest(BaseModel):
    fail_fetches: Optional[bool] = None
    fail_writes: Optional[bool] = None
    push_down: Optional[bool] = None
    drop_push_events: Optional[bool] = None
    echo_writes: Optional[bool] = None
    latency_s: Optional[float] = Field(default=None, ge=0, le=60)


class SimProfileRequest(BaseModel):
    kind: Literal["fixed", "daily", "drift"]
    mean_temp: float = 18.0
    temp_swing: float = Field(default=6.0, ge=0)
    day_seconds: float = Field(default=600.0, gt=0)
    mean_humidity: float = Field(default=55.0, ge=0, le=100)
    humidity_swing: float = Field(default=10.0, ge=0)
    jitter: float = Field(default=0.3, ge=0)
    hold_temperature: Optional[float] = None
