from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.timezones import zone_or_utc
from app.db.models import AGGREGATION_HOUR, SYNC_STATUS_ERROR, SYNC_STATUS_SUCCESS, SYNC_TYPE_ENERGY
from app.repositories.errors import StorageError
from app.repositories.properties import find_metering_point, get_property, list_properties
from app.repositories.sync_log import close_sync_log, open_sync_log
from app.repositories.timeseries import get_latest_consumption_timestamp, upsert_consumption
from app.services.consumption_parser import ParseFailure, parse_consumption_response
from app.services.eloverblik_client import EloverblikClient
from app.services.sync_errors import (
    KIND_CONFIGURATION,
    SyncFailure,
    classify_fetch_error,
    critical_failure,
    parse_failure,
    storage_failure,
    unexpected_failure,
)
from app.services.sync_results import AggregateSyncResult, SyncResult


@dataclass(frozen=True)
class MeteringPointTarget:
    metering_point_id: str
    refresh_token: str | None
    property_id: int | None = None


@dataclass(frozen=True)
class ResolvedRange:
    date_from: date
    date_to: date
    up_to_date: bool = False


class EnergySyncService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        client: EloverblikClient,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("app.energy_sync")
        self._zone = zone_or_utc(settings.energy_sync_timezone, self._logger)

    def available_date(self) -> date:
        today = self._clock().astimezone(self._zone).date()
        return today - timedelta(days=self._settings.energy_availability_lag_days)

    def resolve_range(
        self,
        db: Session,
        *,
        metering_point_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> ResolvedRange:
        if date_from is not None and date_to is not None:
            return ResolvedRange(date_from=date_from, date_to=date_to)

        available = self.available_date()
        latest = get_latest_consumption_timestamp(db, metering_point_id)
        if latest is None:
            lookback = self._settings.energy_default_lookback_days
            return ResolvedRange(date_from=available - timedelta(days=lookback - 1), date_to=available)

        next_date = latest.astimezone(self._zone).date() + timedelta(days=1)
        if next_date > available:
            return ResolvedRange(date_from=next_date, date_to=available, up_to_date=True)
        return ResolvedRange(date_from=next_date, date_to=available)

    def sync_metering_point(
        self,
        target: MeteringPointTarget,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SyncResult:
        entity_key = target.metering_point_id
        if not target.refresh_token:
            message = "Missing refresh token for property"
            self._logger.error(
                "energy sync skipped metering_point_id=%s property_id=%s reason=%s",
                entity_key,
                target.property_id,
                message,
            )
            return self._failed(entity_key, SyncFailure(kind=KIND_CONFIGURATION, message=message))
        if date_from is not None and date_to is not None and date_from > date_to:
            return self._failed(
                entity_key,
                SyncFailure(kind=KIND_CONFIGURATION, message="date_from must not be after date_to"),
                date_from=date_from,
                date_to=date_to,
            )

        with self._session_factory() as db:
            try:
                resolved = self.resolve_range(
                    db,
                    metering_point_id=entity_key,
                    date_from=date_from,
                    date_to=date_to,
                )
            except StorageError as exc:
                self._logger.critical(
                    "Critical: cannot read consumption state metering_point_id=%s error=%s",
                    entity_key,
                    exc,
                )
                return self._failed(entity_key, critical_failure())

            if resolved.up_to_date:
                self._logger.info(
                    "energy data already up to date metering_point_id=%s next_date=%s available=%s",
                    entity_key,
                    resolved.date_from,
                    resolved.date_to,
                )
                return SyncResult(
                    success=True,
                    entity_key=entity_key,
                    sync_type=SYNC_TYPE_ENERGY,
                    records_synced=0,
                    up_to_date=True,
                    message="Already up to date",
                )

            return self._run(db, target=target, resolved=resolved)

    def sync_property(
        self,
        property_id: int,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> AggregateSyncResult:
        aggregate = AggregateSyncResult(scope=f"property:{property_id}")
        try:
            with self._session_factory() as db:
                prop = get_property(db, property_id)
                if prop is None:
                    aggregate.error = f"Property {property_id} not found"
                    return aggregate
                targets = [
                    MeteringPointTarget(
                        metering_point_id=point.metering_point_id,
                        refresh_token=prop.refresh_token,
                        property_id=prop.id,
                    )
                    for point in prop.metering_points
                ]
        except Exception as exc:
            self._logger.exception("failed to load property for energy sync property_id=%s", property_id)
            aggregate.error = f"Database error: {exc}"
            return aggregate

        self._logger.info(
            "property energy sync started property_id=%s metering_points=%s",
            property_id,
            len(targets),
        )
        for target in targets:
            aggregate.results.append(self.sync_metering_point(target, date_from=date_from, date_to=date_to))

        log = self._logger.info if aggregate.success else self._logger.warning
        log(
            "property energy sync finished property_id=%s success=%s records_synced=%s error_count=%s",
            property_id,
            aggregate.success,
            aggregate.records_synced,
            aggregate.error_count,
        )
        return aggregate

    def sync_all_properties(
        self,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> AggregateSyncResult:
        aggregate = AggregateSyncResult(scope="all")
        try:
            with self._session_factory() as db:
                property_ids = [prop.id for prop in list_properties(db)]
        except Exception as exc:
            self._logger.exception("failed to list properties for energy sync")
            aggregate.error = f"Database error: {exc}"
            return aggregate

        for property_id in property_ids:
            result = self.sync_property(property_id, date_from=date_from, date_to=date_to)
            aggregate.results.extend(result.results)
            if result.error is not None and aggregate.error is None:
                aggregate.error = result.error
        return aggregate

    def sync_metering_point_by_id(
        self,
        metering_point_id: str,
        *,
        property_id: int | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> SyncResult:
        try:
            with self._session_factory() as db:
                point = find_metering_point(db, metering_point_id=metering_point_id, property_id=property_id)
                target = (
                    MeteringPointTarget(
                        metering_point_id=point.metering_point_id,
                        refresh_token=point.property.refresh_token,
                        property_id=point.property_id,
                    )
                    if point is not None
                    else None
                )
        except Exception as exc:
            self._logger.exception("failed to load metering point metering_point_id=%s", metering_point_id)
            return self._failed(metering_point_id, storage_failure(exc))

        if target is None:
            return self._failed(
                metering_point_id,
                SyncFailure(kind=KIND_CONFIGURATION, message=f"Metering point {metering_point_id} not found"),
            )
        return self.sync_metering_point(target, date_from=date_from, date_to=date_to)

    def _run(self, db: Session, *, target: MeteringPointTarget, resolved: ResolvedRange) -> SyncResult:
        entity_key = target.metering_point_id
        self._logger.info(
            "energy sync started metering_point_id=%s date_from=%s date_to=%s aggregation_level=%s",
            entity_key,
            resolved.date_from,
            resolved.date_to,
            AGGREGATION_HOUR,
        )
        try:
            log_id = open_sync_log(
                db,
                entity_key=entity_key,
                sync_type=SYNC_TYPE_ENERGY,
                date_from=resolved.date_from,
                date_to=resolved.date_to,
                aggregation_level=AGGREGATION_HOUR,
            )
        except StorageError as exc:
            self._logger.critical(
                "Critical: cannot access database for sync log metering_point_id=%s date_from=%s date_to=%s error=%s",
                entity_key,
                resolved.date_from,
                resolved.date_to,
                exc,
            )
            return self._failed(
                entity_key,
                critical_failure(),
                date_from=resolved.date_from,
                date_to=resolved.date_to,
            )

        try:
            return self._fetch_parse_store(db, target=target, resolved=resolved, log_id=log_id)
        except Exception as exc:
            self._logger.exception(
                "unexpected error during energy sync metering_point_id=%s log_id=%s",
                entity_key,
                log_id,
            )
            return self._close_failed(
                db,
                entity_key=entity_key,
                log_id=log_id,
                resolved=resolved,
                failure=unexpected_failure(exc),
            )

    def _fetch_parse_store(
        self,
        db: Session,
        *,
        target: MeteringPointTarget,
        resolved: ResolvedRange,
        log_id: int,
    ) -> SyncResult:
        entity_key = target.metering_point_id
        refresh_token = target.refresh_token or ""
        # The provider treats the end date as exclusive.
        fetch_to = resolved.date_to + timedelta(days=1)
        try:
            payload = self._client.get_consumption(refresh_token, entity_key, resolved.date_from, fetch_to)
        except Exception as exc:
            failure = classify_fetch_error(exc)
            if failure.evict_credential:
                self._client.invalidate_credential(refresh_token)
            self._logger.log(
                failure.log_level,
                "%s metering_point_id=%s date_from=%s date_to=%s error=%s",
                failure.message,
                entity_key,
                resolved.date_from,
                resolved.date_to,
                exc,
            )
            return self._close_failed(db, entity_key=entity_key, log_id=log_id, resolved=resolved, failure=failure)

        parsed = parse_consumption_response(payload, entity_key)
        if isinstance(parsed, ParseFailure):
            failure = parse_failure(parsed.message)
            self._logger.error(
                "%s metering_point_id=%s date_from=%s date_to=%s shape=%s",
                failure.message,
                entity_key,
                resolved.date_from,
                resolved.date_to,
                parsed.shape,
            )
            return self._close_failed(db, entity_key=entity_key, log_id=log_id, resolved=resolved, failure=failure)
        self._logger.info(
            "parsed consumption data metering_point_id=%s record_count=%s",
            entity_key,
            len(parsed.rows),
        )

        try:
            stored = upsert_consumption(db, parsed.rows)
        except StorageError as exc:
            failure = storage_failure(exc)
            self._logger.error(
                "%s metering_point_id=%s record_count=%s",
                failure.message,
                entity_key,
                len(parsed.rows),
            )
            return self._close_failed(db, entity_key=entity_key, log_id=log_id, resolved=resolved, failure=failure)

        close_sync_log(db, log_id=log_id, status=SYNC_STATUS_SUCCESS, records_synced=stored)
        self._logger.info(
            "energy sync completed metering_point_id=%s records_synced=%s date_from=%s date_to=%s log_id=%s",
            entity_key,
            stored,
            resolved.date_from,
            resolved.date_to,
            log_id,
        )
        return SyncResult(
            success=True,
            entity_key=entity_key,
            sync_type=SYNC_TYPE_ENERGY,
            records_synced=stored,
            log_id=log_id,
            date_from=resolved.date_from,
            date_to=resolved.date_to,
        )

    def _close_failed(
        self,
        db: Session,
        *,
        entity_key: str,
        log_id: int,
        resolved: ResolvedRange,
        failure: SyncFailure,
    ) -> SyncResult:
        close_sync_log(db, log_id=log_id, status=SYNC_STATUS_ERROR, error_message=failure.message)
        return self._failed(
            entity_key,
            failure,
            log_id=log_id,
            date_from=resolved.date_from,
            date_to=resolved.date_to,
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
            sync_type=SYNC_TYPE_ENERGY,
            log_id=log_id,
            date_from=date_from,
            date_to=date_to,
            error=failure.message,
            error_kind=failure.kind,
        )
