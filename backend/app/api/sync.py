from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_sync_scheduler, get_weather_sync_service, require_admin_token
from app.repositories.sync_log import list_sync_logs
from app.schemas.sync import (
    SyncHealthResponse,
    SyncLogEntryResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
    WeatherBackfillRequest,
    WeatherBackfillResponse,
)
from app.services.sync_scheduler import SyncSchedulerService
from app.services.weather_sync import Coordinates, WeatherSyncService


router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post(
    "/trigger",
    response_model=SyncTriggerResponse,
    dependencies=[Depends(require_admin_token)],
)
def trigger_sync(
    payload: SyncTriggerRequest,
    response: Response,
    scheduler: SyncSchedulerService = Depends(get_sync_scheduler),
) -> SyncTriggerResponse:
    result = scheduler.trigger_manual_sync(
        domain=payload.domain,
        property_id=payload.property_id,
        metering_point_id=payload.metering_point_id,
        date_from=payload.date_from,
        date_to=payload.date_to,
        force=payload.force,
    )
    if not result["success"]:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return SyncTriggerResponse.model_validate(
        {
            **result,
            "message": "Sync completed successfully" if result["success"] else "Sync failed",
        }
    )


@router.post(
    "/weather/backfill",
    response_model=WeatherBackfillResponse,
    dependencies=[Depends(require_admin_token)],
)
def backfill_weather(
    payload: WeatherBackfillRequest,
    response: Response,
    weather_service: WeatherSyncService = Depends(get_weather_sync_service),
) -> WeatherBackfillResponse:
    location = None
    if payload.latitude is not None and payload.longitude is not None:
        location = Coordinates(latitude=payload.latitude, longitude=payload.longitude)
    result = weather_service.backfill(
        start_date=payload.start_date,
        end_date=payload.end_date,
        property_id=payload.property_id,
        location=location,
    )
    if not result.success:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return WeatherBackfillResponse.model_validate(result.to_dict())


@router.get("/health", response_model=SyncHealthResponse)
def get_sync_health(
    scheduler: SyncSchedulerService = Depends(get_sync_scheduler),
) -> SyncHealthResponse:
    return SyncHealthResponse.model_validate(scheduler.get_sync_health())


@router.get("/status", response_model=SyncStatusResponse)
def get_sync_status(
    scheduler: SyncSchedulerService = Depends(get_sync_scheduler),
) -> SyncStatusResponse:
    return SyncStatusResponse.model_validate(scheduler.get_status_snapshot())


@router.get("/logs", response_model=list[SyncLogEntryResponse])
def get_sync_logs(
    limit: int = Query(default=50, ge=1, le=500),
    entity_key: str | None = Query(default=None),
    sync_type: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> list[SyncLogEntryResponse]:
    rows = list_sync_logs(
        db,
        limit=limit,
        entity_key=entity_key,
        sync_type=sync_type,
        status=status_filter,
    )
    return [SyncLogEntryResponse.model_validate(row) for row in rows]
