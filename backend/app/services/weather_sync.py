from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.timezones import zone_or_utc
from app.db.models import AGGREGATION_HOUR, SYNC_STATUS_ERROR, SYNC_STATUS_SUCCESS, SYNC_TYPE_WEATHER
from app.repositories.errors import StorageError
from app.repositories.properties import get_property
from app.repositories.sync_log import close_sync_log, has_recent_in_progress, open_sync_log
from app.repositories.timeseries import upsert_weather
from app.services.consumption_parser import ParseFailure
from app.services.open_meteo_client import OpenMeteoClient
from app.services.sync_errors import (
    KIND_CONFIGURATION,
    KIND_OVERLAP,
    SyncFailure,
    classify_fetch_error,
    critical_failure,
    parse_failure,
    storage_failure,
    unexpected_failure,
)
from app.services.sync_results import BackfillResult, SyncResult
from app.services.weather_parser import parse_weather_response

OVERLAP_MESSAGE = "Another weather sync is already in progress for this location/property"
DISABLED_MESSAGE = "Sync disabled"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class WeatherLocation:
    location_key: str
    latitude: float
    longitude: float
    property_id: int | None = None
    enabled: bool = True


def coordinates_key(latitude: float, longitude: float) -> str:
    return f"{round(float(latitude), 4):.4f},{round(float(longitude), 4):.4f}"


def batch_date_ranges(start_date: date, end_date: date, batch_days: int) -> list[tuple[date, date]]:
    """Split an inclusive date range into consecutive inclusive batches of at most ``batch_days``."""
    if batch_days < 1:
        raise ValueError("batch_days must be >= 1")
    batches: list[tuple[date, date]] = []
    cursor = start_date
    while cursor <= end_date:
        batch_end = min(cursor + timedelta(days=batch_days - 1), end_date)
        batches.append((cursor, batch_end))
        cursor = batch_end + timedelta(days=1)
    return batches


class WeatherSyncService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        client: OpenMeteoClient,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._logger = logging.getLogger("app.weather_sync")
        self._zone = zone_or_utc(settings.weather_sync_timezone, self._logger)

        self._locks_guard = Lock()
        self._entity_locks: dict[str, Lock] = {}

    def default_location(self) -> WeatherLocation:
        latitude = self._settings.weather_default_latitude
        longitude = self._settings.weather_default_longitude
        return WeatherLocation(
            location_key=coordinates_key(latitude, longitude),
            latitude=latitude,
            longitude=longitude,
        )

    def default_range(self) -> tuple[date, date]:
        today = self._clock().astimezone(self._zone).date()
        date_to = today - timedelta(days=self._settings.weather_availability_lag_days)
        date_from = date_to - timedelta(days=self._settings.weather_sync_days_back - 1)
        return date_from, date_to

    def resolve_location(
        self,
        *,
        property_id: int | None = None,
        location: Coordinates | None = None,
    ) -> WeatherLocation | None:
        """Location for a sync; ``None`` when the requested property does not exist."""
        if property_id is None:
            if location is None:
                return self.default_location()
            return WeatherLocation(
                location_key=coordinates_key(location.latitude, location.longitude),
                latitude=location.latitude,
                longitude=location.longitude,
            )

        with self._session_factory() as db:
            prop = get_property(db, property_id)
            if prop is None:
                return None
            enabled = bool(prop.weather_sync_enabled)
            if location is not None:
                latitude, longitude = location.latitude, location.longitude
            elif prop.latitude is not None and prop.longitude is not None:
                latitude, longitude = float(prop.latitude), float(prop.longitude)
            else:
                self._logger.info(
                    "property has no coordinates; using default location property_id=%s",
                    property_id,
                )
                latitude = self._settings.weather_default_latitude
                longitude = self._settings.weather_default_longitude

        if self._settings.weather_location_key_mode == "property":
            location_key = f"property:{property_id}"
        else:
            location_key = coordinates_key(latitude, longitude)
        return WeatherLocation(
            location_key=location_key,
            latitude=latitude,
            longitude=longitude,
            property_id=property_id,
            enabled=enabled,
        )

    def sync_weather(
        self,
        *,
        property_id: int | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        location: Coordinates | None = None,
        force: bool = False,
    ) -> SyncResult:
        entity_key = f"property:{property_id}" if property_id is not None else "default"
        try:
            resolved = self.resolve_location(property_id=property_id, location=location)
        except Exception as exc:
            self._logger.critical(
                "Critical: cannot resolve weather location property_id=%s error=%s",
                property_id,
                exc,
            )
            return self._failed(entity_key, critical_failure())

        if resolved is None:
            return self._failed(
                entity_key,
                SyncFailure(kind=KIND_CONFIGURATION, message=f"Property {property_id} not found"),
            )
        entity_key = resolved.location_key
        if not resolved.enabled and not force:
            self._logger.info("weather sync disabled for property property_id=%s", property_id)
            return SyncResult(
                success=True,
                entity_key=entity_key,
                sync_type=SYNC_TYPE_WEATHER,
                message=DISABLED_MESSAGE,
            )

        if date_from is None or date_to is None:
            date_from, date_to = self.default_range()
        if date_from > date_to:
            return self._failed(
                entity_key,
                SyncFailure(kind=KIND_CONFIGURATION, message="date_from must not be after date_to"),
                date_from=date_from,
                date_to=date_to,
            )

        if force:
            return self._guarded_run(resolved, date_from=date_from, date_to=date_to, check_log=False)

        entity_lock = self._lock_for(entity_key)
        if not entity_lock.acquire(blocking=False):
            self._logger.warning(
                "weather sync skipped; run already active in this process location_key=%s",
                entity_key,
            )
            return self._overlap(entity_key, date_from=date_from, date_to=date_to)
        try:
            return self._guarded_run(resolved, date_from=date_from, date_to=date_to, check_log=True)
        finally:
            entity_lock.release()

    def backfill(
        self,
        *,
        start_date: date,
        end_date: date,
        property_id: int | None = None,
        location: Coordinates | None = None,
    ) -> BackfillResult:
        summary = BackfillResult()
        if start_date > end_date:
            summary.results.append(
                self._failed(
                    f"property:{property_id}" if property_id is not None else "default",
                    SyncFailure(kind=KIND_CONFIGURATION, message="start_date must not be after end_date"),
                    date_from=start_date,
                    date_to=end_date,
                )
            )
            return summary

        batches = batch_date_ranges(start_date, end_date, self._settings.weather_backfill_batch_days)
        self._logger.info(
            "weather backfill started start_date=%s end_date=%s batches=%s property_id=%s",
            start_date,
            end_date,
            len(batches),
            property_id,
        )
        for index, (batch_from, batch_to) in enumerate(batches):
            if index > 0 and self._settings.weather_backfill_batch_delay_seconds > 0:
                self._sleep(self._settings.weather_backfill_batch_delay_seconds)
            result = self.sync_weather(
                property_id=property_id,
                date_from=batch_from,
                date_to=batch_to,
                location=location,
            )
            summary.results.append(result)
            if result.success:
                summary.total_records += result.records_synced
            else:
                self._logger.warning(
                    "weather backfill batch failed date_from=%s date_to=%s error=%s",
                    batch_from,
                    batch_to,
                    result.error,
                )

        self._logger.info(
            "weather backfill finished success=%s total_records=%s batches=%s",
            summary.success,
            summary.total_records,
            summary.batches,
        )
        return summary

    def _guarded_run(
        self,
        location: WeatherLocation,
        *,
        date_from: date,
        date_to: date,
        check_log: bool,
    ) -> SyncResult:
        entity_key = location.location_key
        with self._session_factory() as db:
            if check_log:
                try:
                    busy = has_recent_in_progress(
                        db,
                        entity_keys=[entity_key],
                        sync_type=SYNC_TYPE_WEATHER,
                        within=timedelta(seconds=self._settings.weather_overlap_guard_seconds),
                    )
                except StorageError as exc:
                    self._logger.critical(
                        "Critical: cannot check weather sync log location_key=%s error=%s",
                        entity_key,
                        exc,
                    )
                    return self._failed(entity_key, critical_failure(), date_from=date_from, date_to=date_to)
                if busy:
                    self._logger.warning(
                        "weather sync skipped; recent run still in progress location_key=%s",
                        entity_key,
                    )
                    return self._overlap(entity_key, date_from=date_from, date_to=date_to)

            self._logger.info(
                "weather sync started location_key=%s latitude=%s longitude=%s date_from=%s date_to=%s",
                entity_key,
                location.latitude,
                location.longitude,
                date_from,
                date_to,
            )
            try:
                log_id = open_sync_log(
                    db,
                    entity_key=entity_key,
                    sync_type=SYNC_TYPE_WEATHER,
                    date_from=date_from,
                    date_to=date_to,
                    aggregation_level=AGGREGATION_HOUR,
                )
            except StorageError as exc:
                self._logger.critical(
                    "Critical: cannot access database for sync log location_key=%s error=%s",
                    entity_key,
                    exc,
                )
                return self._failed(entity_key, critical_failure(), date_from=date_from, date_to=date_to)

            try:
                failure, stored = self._fetch_parse_store(db, location, date_from=date_from, date_to=date_to)
            except Exception as exc:
                self._logger.exception("unexpected error during weather sync location_key=%s", entity_key)
                failure, stored = unexpected_failure(exc), 0

            if failure is not None:
                close_sync_log(db, log_id=log_id, status=SYNC_STATUS_ERROR, error_message=failure.message)
                return self._failed(entity_key, failure, log_id=log_id, date_from=date_from, date_to=date_to)

            close_sync_log(db, log_id=log_id, status=SYNC_STATUS_SUCCESS, records_synced=stored)

        self._logger.info(
            "weather sync completed location_key=%s records_synced=%s log_id=%s",
            entity_key,
            stored,
            log_id,
        )
        return SyncResult(
            success=True,
            entity_key=entity_key,
            sync_type=SYNC_TYPE_WEATHER,
            records_synced=stored,
            log_id=log_id,
            date_from=date_from,
            date_to=date_to,
        )

    def _fetch_parse_store(
        self,
        db: Session,
        location: WeatherLocation,
        *,
        date_from: date,
        date_to: date,
    ) -> tuple[SyncFailure | None, int]:
        try:
            payload = self._client.fetch_historical(
                latitude=location.latitude,
                longitude=location.longitude,
                start_date=date_from,
                end_date=date_to,
            )
        except Exception as exc:
            failure = classify_fetch_error(exc)
            self._logger.log(
                failure.log_level,
                "%s location_key=%s date_from=%s date_to=%s error=%s",
                failure.message,
                location.location_key,
                date_from,
                date_to,
                exc,
            )
            return failure, 0

        parsed = parse_weather_response(
            payload,
            location_key=location.location_key,
            property_id=location.property_id,
        )
        if isinstance(parsed, ParseFailure):
            failure = parse_failure(parsed.message)
            self._logger.error(
                "%s location_key=%s shape=%s",
                failure.message,
                location.location_key,
                parsed.shape,
            )
            return failure, 0

        try:
            stored = upsert_weather(db, parsed.rows)
        except StorageError as exc:
            failure = storage_failure(exc)
            self._logger.error(
                "%s location_key=%s record_count=%s",
                failure.message,
                location.location_key,
                len(parsed.rows),
            )
            return failure, 0
        return None, stored

    def _lock_for(self, entity_key: str) -> Lock:
        with self._locks_guard:
            lock = self._entity_locks.get(entity_key)
            if lock is None:
                lock = Lock()
                self._entity_locks[entity_key] = lock
            return lock

    def _overlap(self, entity_key: str, *, date_from: date, date_to: date) -> SyncResult:
        return self._failed(
            entity_key,
            SyncFailure(kind=KIND_OVERLAP, message=OVERLAP_MESSAGE, log_level=logging.WARNING),
            date_from=date_from,
            date_to=date_to,
        )

    def _failed(
        self,
        entity_key: str,
        failure: SyncFailure,
        *,
        log_id: int | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SyncResult:
        return SyncResult(
            success=False,
            entity_key=entity_key,
            sync_type=SYNC_TYPE_WEATHER,
            log_id=log_id,
            date_from=date_from,
            date_to=date_to,
            error=failure.message,
            error_kind=failure.kind,
        )
