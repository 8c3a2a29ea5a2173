import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.sync import router as sync_router
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db
from app.services.eloverblik_client import EloverblikClient
from app.services.energy_sync import EnergySyncService
from app.services.open_meteo_client import OpenMeteoClient
from app.services.sync_scheduler import SyncSchedulerService
from app.services.token_cache import TokenCache
from app.services.weather_sync import WeatherSyncService


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = logging.getLogger("app.main")

    eloverblik_client = EloverblikClient(
        base_url=settings.eloverblik_base_url,
        timeout_seconds=settings.eloverblik_http_timeout_seconds,
        token_ttl_seconds=settings.eloverblik_token_ttl_seconds,
    )
    open_meteo_client = OpenMeteoClient(
        archive_url=settings.open_meteo_archive_url,
        timeout_seconds=settings.open_meteo_http_timeout_seconds,
    )
    energy_sync_service = EnergySyncService(
        settings=settings,
        session_factory=SessionLocal,
        client=eloverblik_client,
    )
    weather_sync_service = WeatherSyncService(
        settings=settings,
        session_factory=SessionLocal,
        client=open_meteo_client,
    )
    sync_scheduler = SyncSchedulerService(
        settings=settings,
        session_factory=SessionLocal,
        energy_service=energy_sync_service,
        weather_service=weather_sync_service,
    )

    app.state.settings = settings
    app.state.token_cache = eloverblik_client.token_cache
    app.state.energy_sync_service = energy_sync_service
    app.state.weather_sync_service = weather_sync_service
    app.state.sync_scheduler = sync_scheduler

    if not (settings.admin_token or "").strip():
        logger.warning("ADMIN_TOKEN is not set; sync trigger endpoints are unauthenticated")

    sync_scheduler.start()
    try:
        yield
    finally:
        sync_scheduler.stop()


app = FastAPI(title="Meter Sync Backend", lifespan=lifespan)
app.include_router(sync_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    sync_scheduler: SyncSchedulerService | None = getattr(request.app.state, "sync_scheduler", None)
    settings: Settings | None = getattr(request.app.state, "settings", None)
    token_cache: TokenCache | None = getattr(request.app.state, "token_cache", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if sync_scheduler is None:
        scheduler_status: dict[str, object] = {"running": False, "error": "Sync scheduler not initialized"}
    else:
        scheduler_status = sync_scheduler.get_status_snapshot()

    return {
        "status": "ok" if db_ok else "degraded",
        "db": db_status,
        "scheduler": scheduler_status,
        "token_cache": {"entries": token_cache.size() if token_cache else 0},
        "sources": {
            "eloverblik_base_url": settings.eloverblik_base_url if settings else None,
            "open_meteo_archive_url": settings.open_meteo_archive_url if settings else None,
        },
    }
