from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


SyncDomain = Literal["energy", "weather", "both"]


class SyncTriggerRequest(BaseModel):
    domain: SyncDomain = "both"
    property_id: int | None = Field(default=None, ge=1)
    metering_point_id: str | None = Field(default=None, min_length=1, max_length=18)
    date_from: date | None = None
    date_to: date | None = None
    force: bool = False

    @model_validator(mode="after")
    def _check_range(self) -> "SyncTriggerRequest":
        if (self.date_from is None) != (self.date_to is None):
            raise ValueError("date_from and date_to must be provided together")
        if self.date_from is not None and self.date_to is not None and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class SyncResultResponse(BaseModel):
    success: bool
    entity_key: str
    sync_type: str
    records_synced: int = 0
    log_id: int | None = None
    date_from: date | None = None
    date_to: date | None = None
    error: str | None = None
    error_kind: str | None = None
    up_to_date: bool = False
    message: str | None = None


class AggregateSyncResponse(BaseModel):
    scope: str
    success: bool
    records_synced: int
    error_count: int
    error: str | None = None
    results: list[SyncResultResponse] = Field(default_factory=list)


class SyncTriggerResponse(BaseModel):
    success: bool
    records_synced: int
    log_id: int | None = None
    error: str | None = None
    energy: AggregateSyncResponse | None = None
    weather: SyncResultResponse | None = None
    message: str | None = None


class WeatherBackfillRequest(BaseModel):
    start_date: date
    end_date: date
    property_id: int | None = Field(default=None, ge=1)
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)

    @model_validator(mode="after")
    def _check_request(self) -> "WeatherBackfillRequest":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self


class WeatherBackfillResponse(BaseModel):
    success: bool
    total_records: int
    batches: int
    results: list[SyncResultResponse] = Field(default_factory=list)


class SyncHealthResponse(BaseModel):
    last_run: datetime | None = None
    last_status: str | None = None
    records_synced: int = 0
    sync_type: str | None = None
    error_message: str | None = None


class SyncDomainStatusResponse(BaseModel):
    enabled: bool
    sync_type: str
    schedule: str
    timezone: str
    disabled_reason: str | None = None
    next_due_ts: datetime | None = None
    last_tick_started_ts: datetime | None = None
    last_tick_finished_ts: datetime | None = None
    last_tick_success: bool | None = None
    last_tick_records: int = 0
    last_error: str | None = None


class SyncStatusResponse(BaseModel):
    running: bool
    energy: SyncDomainStatusResponse
    weather: SyncDomainStatusResponse


class SyncLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_key: str
    sync_type: str
    date_from: date | None = None
    date_to: date | None = None
    aggregation_level: str | None = None
    status: str
    error_message: str | None = None
    records_synced: int
    created_at: datetime
    finished_at: datetime | None = None
