from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.timezones import resolve_timezone
from app.db.models import SYNC_TYPE_ENERGY, SYNC_TYPE_WEATHER
from app.repositories.properties import list_properties
from app.repositories.sync_log import get_latest_sync_log, reconcile_stale_in_progress
from app.services.energy_sync import EnergySyncService, MeteringPointTarget
from app.services.sync_errors import unexpected_failure
from app.services.sync_results import AggregateSyncResult, SyncResult
from app.services.weather_sync import WeatherSyncService

DOMAIN_ENERGY = "energy"
DOMAIN_WEATHER = "weather"
DOMAIN_BOTH = "both"
MANUAL_DOMAINS: tuple[str, ...] = (DOMAIN_ENERGY, DOMAIN_WEATHER, DOMAIN_BOTH)


@dataclass
class _DomainState:
    name: str
    expression: str
    timezone_name: str
    schedule: CronTrigger | None
    disabled_reason: str | None = None
    thread: Thread | None = None
    stop_event: Event | None = None
    tick_lock: Lock = field(default_factory=Lock)
    next_due_ts: datetime | None = None
    last_tick_started_ts: datetime | None = None
    last_tick_finished_ts: datetime | None = None
    last_tick_success: bool | None = None
    last_tick_records: int = 0
    last_error: str | None = None

    @property
    def enabled(self) -> bool:
        return self.schedule is not None


class SyncSchedulerService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        energy_service: EnergySyncService,
        weather_service: WeatherSyncService,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._energy_service = energy_service
        self._weather_service = weather_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("app.sync_scheduler")
        self._lock = Lock()
        self._running = False
        self._join_timeout_seconds = 5.0

        self._domains: dict[str, _DomainState] = {
            DOMAIN_ENERGY: self._build_domain(
                DOMAIN_ENERGY,
                enabled=settings.energy_sync_enabled,
                expression=settings.energy_sync_schedule,
                timezone_name=settings.energy_sync_timezone,
            ),
            DOMAIN_WEATHER: self._build_domain(
                DOMAIN_WEATHER,
                enabled=settings.weather_sync_enabled,
                expression=settings.weather_sync_schedule,
                timezone_name=settings.weather_sync_timezone,
            ),
        }
        self._ticks: dict[str, Callable[[], AggregateSyncResult]] = {
            DOMAIN_ENERGY: self.run_energy_tick,
            DOMAIN_WEATHER: self.run_weather_tick,
        }

    def _build_domain(
        self,
        name: str,
        *,
        enabled: bool,
        expression: str,
        timezone_name: str,
    ) -> _DomainState:
        if not enabled:
            return _DomainState(
                name=name,
                expression=expression,
                timezone_name=timezone_name,
                schedule=None,
                disabled_reason="disabled by configuration",
            )
        try:
            schedule = build_cron_trigger(expression, timezone_name)
        except ValueError as exc:
            self._logger.error(
                "invalid sync schedule; domain disabled domain=%s schedule='%s' timezone=%s error=%s",
                name,
                expression,
                timezone_name,
                exc,
            )
            return _DomainState(
                name=name,
                expression=expression,
                timezone_name=timezone_name,
                schedule=None,
                disabled_reason=str(exc),
            )
        return _DomainState(name=name, expression=expression, timezone_name=timezone_name, schedule=schedule)

    def is_domain_enabled(self, domain: str) -> bool:
        state = self._domains.get(domain)
        return bool(state and state.enabled)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._reconcile_stale_logs()

        for state in self._domains.values():
            if not state.enabled:
                self._logger.info(
                    "sync domain not scheduled domain=%s reason=%s",
                    state.name,
                    state.disabled_reason,
                )
                continue
            # A loop left over from a previous start() exits on its own event
            # once its in-flight tick returns.
            stop_event = Event()
            thread = Thread(
                target=self._domain_loop,
                args=(state, stop_event),
                name=f"sync-scheduler-{state.name}",
                daemon=True,
            )
            with self._lock:
                state.stop_event = stop_event
                state.thread = thread
            thread.start()
            self._logger.info(
                "started sync schedule domain=%s schedule='%s' timezone=%s",
                state.name,
                state.expression,
                state.timezone_name,
            )

    def stop(self) -> None:
        for state in self._domains.values():
            with self._lock:
                stop_event, thread = state.stop_event, state.thread
                state.stop_event = None
                state.thread = None
            if stop_event is not None:
                stop_event.set()
            if thread is not None and thread.is_alive():
                thread.join(timeout=self._join_timeout_seconds)
                if thread.is_alive():
                    self._logger.warning(
                        "sync loop still finishing an in-flight tick domain=%s",
                        state.name,
                    )
        with self._lock:
            if self._running:
                self._logger.info("sync scheduler stopped")
            self._running = False
            for state in self._domains.values():
                state.next_due_ts = None

    def run_energy_tick(self) -> AggregateSyncResult:
        aggregate = AggregateSyncResult(scope="scheduled:energy")
        with self._session_factory() as db:
            targets = [
                MeteringPointTarget(
                    metering_point_id=point.metering_point_id,
                    refresh_token=prop.refresh_token,
                    property_id=prop.id,
                )
                for prop in list_properties(db)
                for point in prop.metering_points
            ]

        self._logger.info("energy tick started metering_points=%s", len(targets))
        for target in targets:
            try:
                result = self._energy_service.sync_metering_point(target)
            except Exception as exc:
                self._logger.exception(
                    "energy sync raised metering_point_id=%s",
                    target.metering_point_id,
                )
                result = _unexpected_result(target.metering_point_id, SYNC_TYPE_ENERGY, exc)
            aggregate.results.append(result)
        return aggregate

    def run_weather_tick(self) -> AggregateSyncResult:
        aggregate = AggregateSyncResult(scope="scheduled:weather")
        with self._session_factory() as db:
            properties = list_properties(db)
            property_ids = [prop.id for prop in properties if prop.weather_sync_enabled]
            has_properties = bool(properties)

        if not has_properties:
            self._logger.info("weather tick started with default location")
            aggregate.results.append(self._weather_entity(None))
            return aggregate

        self._logger.info("weather tick started properties=%s", len(property_ids))
        for property_id in property_ids:
            aggregate.results.append(self._weather_entity(property_id))
        return aggregate

    def trigger_manual_sync(
        self,
        *,
        domain: str = DOMAIN_BOTH,
        property_id: int | None = None,
        metering_point_id: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        if domain not in MANUAL_DOMAINS:
            raise ValueError(f"unknown sync domain '{domain}'")
        self._logger.info(
            "manual sync requested domain=%s property_id=%s metering_point_id=%s date_from=%s date_to=%s force=%s",
            domain,
            property_id,
            metering_point_id,
            date_from,
            date_to,
            force,
        )

        energy: AggregateSyncResult | None = None
        weather: SyncResult | None = None
        if domain in (DOMAIN_ENERGY, DOMAIN_BOTH):
            if metering_point_id is not None:
                single = self._energy_service.sync_metering_point_by_id(
                    metering_point_id,
                    property_id=property_id,
                    date_from=date_from,
                    date_to=date_to,
                )
                energy = AggregateSyncResult(scope=f"metering_point:{metering_point_id}", results=[single])
            elif property_id is not None:
                energy = self._energy_service.sync_property(property_id, date_from=date_from, date_to=date_to)
            else:
                energy = self._energy_service.sync_all_properties(date_from=date_from, date_to=date_to)
        if domain in (DOMAIN_WEATHER, DOMAIN_BOTH):
            weather = self._weather_service.sync_weather(
                property_id=property_id,
                date_from=date_from,
                date_to=date_to,
                force=force,
            )

        errors: list[str] = []
        if energy is not None and not energy.success:
            errors.append(energy.error or f"{energy.error_count} energy sync(s) failed")
        if weather is not None and not weather.success:
            errors.append(weather.error or "weather sync failed")

        log_id = None
        if weather is not None and weather.log_id is not None:
            log_id = weather.log_id
        elif energy is not None:
            log_id = energy.last_log_id

        return {
            "success": not errors,
            "records_synced": (energy.records_synced if energy else 0)
            + (weather.records_synced if weather and weather.success else 0),
            "log_id": log_id,
            "error": "; ".join(errors) if errors else None,
            "energy": energy.to_dict() if energy else None,
            "weather": weather.to_dict() if weather else None,
        }

    def get_sync_health(self) -> dict[str, Any]:
        with self._session_factory() as db:
            latest = get_latest_sync_log(db)
            if latest is None:
                return {"last_run": None, "last_status": None, "records_synced": 0}
            return {
                "last_run": _to_iso(latest.created_at),
                "last_status": latest.status,
                "records_synced": int(latest.records_synced or 0),
                "sync_type": latest.sync_type,
                "error_message": latest.error_message,
            }

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                DOMAIN_ENERGY: _domain_snapshot(self._domains[DOMAIN_ENERGY], SYNC_TYPE_ENERGY),
                DOMAIN_WEATHER: _domain_snapshot(self._domains[DOMAIN_WEATHER], SYNC_TYPE_WEATHER),
            }

    def _domain_loop(self, state: _DomainState, stop_event: Event) -> None:
        trigger = state.schedule
        if trigger is None:
            return
        due: datetime | None = None
        while not stop_event.is_set():
            now = self._clock()
            if due is None:
                due = next_fire_utc(trigger, now)
                if due is None:
                    self._logger.warning("sync schedule has no further fire times domain=%s", state.name)
                    return
                with self._lock:
                    state.next_due_ts = due
            if now >= due:
                self._run_tick(state)
                if stop_event.is_set():
                    return
                due = next_fire_utc(trigger, self._clock(), after=due)
                with self._lock:
                    state.next_due_ts = due
                if due is None:
                    return
                continue
            remaining = (due - now).total_seconds()
            if stop_event.wait(min(1.0, max(0.1, remaining))):
                return

    def _run_tick(self, state: _DomainState) -> bool:
        if not state.tick_lock.acquire(blocking=False):
            self._logger.warning("sync tick skipped; previous tick still running domain=%s", state.name)
            return False
        try:
            self._run_tick_locked(state)
        finally:
            state.tick_lock.release()
        return True

    def _run_tick_locked(self, state: _DomainState) -> None:
        started = self._clock()
        with self._lock:
            state.last_tick_started_ts = started
        try:
            result = self._ticks[state.name]()
        except Exception as exc:
            self._logger.exception("sync tick failed domain=%s", state.name)
            with self._lock:
                state.last_tick_finished_ts = self._clock()
                state.last_tick_success = False
                state.last_tick_records = 0
                state.last_error = str(exc) or exc.__class__.__name__
            return

        finished = self._clock()
        level = logging.INFO if result.success else logging.WARNING
        self._logger.log(
            level,
            "sync tick finished domain=%s success=%s records_synced=%s error_count=%s duration_seconds=%.1f",
            state.name,
            result.success,
            result.records_synced,
            result.error_count,
            (finished - started).total_seconds(),
        )
        with self._lock:
            state.last_tick_finished_ts = finished
            state.last_tick_success = result.success
            state.last_tick_records = result.records_synced
            state.last_error = _first_error(result)

    def _weather_entity(self, property_id: int | None) -> SyncResult:
        try:
            return self._weather_service.sync_weather(property_id=property_id)
        except Exception as exc:
            self._logger.exception("weather sync raised property_id=%s", property_id)
            entity_key = f"property:{property_id}" if property_id is not None else "default"
            return _unexpected_result(entity_key, SYNC_TYPE_WEATHER, exc)

    def _reconcile_stale_logs(self) -> None:
        try:
            with self._session_factory() as db:
                count = reconcile_stale_in_progress(
                    db,
                    older_than=timedelta(seconds=self._settings.sync_log_stale_seconds),
                )
        except Exception:
            self._logger.exception("failed to reconcile stale sync log entries")
            return
        if count:
            self._logger.warning("marked stale in-progress sync log entries as error count=%s", count)


def build_cron_trigger(expression: str, timezone_name: str) -> CronTrigger:
    """Parse a five-field crontab expression evaluated in ``timezone_name``.

    Raises ValueError for an invalid expression or an unknown timezone.
    """
    return CronTrigger.from_crontab(expression, timezone=resolve_timezone(timezone_name))


def next_fire_utc(
    trigger: CronTrigger,
    now: datetime,
    *,
    after: datetime | None = None,
) -> datetime | None:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = now
    if after is not None:
        # Fire times already missed while a tick ran are skipped.
        start = max(now, after + timedelta(seconds=1))
    fire_time = trigger.get_next_fire_time(None, start)
    if fire_time is None:
        return None
    return fire_time.astimezone(timezone.utc)


def _unexpected_result(entity_key: str, sync_type: str, exc: BaseException) -> SyncResult:
    failure = unexpected_failure(exc)
    return SyncResult(
        success=False,
        entity_key=entity_key,
        sync_type=sync_type,
        error=failure.message,
        error_kind=failure.kind,
    )


def _first_error(result: AggregateSyncResult) -> str | None:
    if result.error:
        return result.error
    for item in result.results:
        if not item.success:
            return item.error
    return None


def _domain_snapshot(state: _DomainState, sync_type: str) -> dict[str, Any]:
    return {
        "enabled": state.enabled,
        "sync_type": sync_type,
        "schedule": state.expression,
        "timezone": state.timezone_name,
        "disabled_reason": state.disabled_reason,
        "next_due_ts": _to_iso(state.next_due_ts),
        "last_tick_started_ts": _to_iso(state.last_tick_started_ts),
        "last_tick_finished_ts": _to_iso(state.last_tick_finished_ts),
        "last_tick_success": state.last_tick_success,
        "last_tick_records": state.last_tick_records,
        "last_error": state.last_error,
    }


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
