import hmac
from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request

from app.core.config import Settings

if TYPE_CHECKING:
    from app.services.sync_scheduler import SyncSchedulerService
    from app.services.weather_sync import WeatherSyncService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_sync_scheduler(request: Request) -> "SyncSchedulerService":
    service = getattr(request.app.state, "sync_scheduler", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync scheduler is not available")
    return service


def get_weather_sync_service(request: Request) -> "WeatherSyncService":
    service = getattr(request.app.state, "weather_sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Weather sync service is not initialized")
    return service


def require_admin_token(
    request: Request,
    settings: Settings = Depends(get_settings_from_app),
) -> None:
    expected = (settings.admin_token or "").strip()
    if expected == "":
        return

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(header[len("Bearer "):].strip(), expected):
        raise HTTPException(status_code=403, detail="Invalid admin token")
