from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock
from typing import Any
from unittest import TestCase
from unittest.mock import patch

from app.core.config import Settings
from app.repositories.sync_log import get_sync_log
from app.services.energy_sync import MeteringPointTarget
from app.services.sync_results import AggregateSyncResult, SyncResult
from app.services.sync_scheduler import SyncSchedulerService, build_cron_trigger, next_fire_utc
from sqlite_support import add_property, add_sync_log, build_session_factory


class _FakeEnergyService:
    def __init__(self) -> None:
        self.synced: list[str] = []
        self.failing: set[str] = set()
        self.requests: list[tuple[str, Any]] = []

    def sync_metering_point(self, target: MeteringPointTarget, *, date_from=None, date_to=None) -> SyncResult:
        self.synced.append(target.metering_point_id)
        if target.metering_point_id in self.failing:
            raise RuntimeError("adapter exploded")
        return SyncResult(
            success=True,
            entity_key=target.metering_point_id,
            sync_type="energy",
            records_synced=24,
            log_id=len(self.synced),
        )

    def sync_property(self, property_id: int, *, date_from=None, date_to=None) -> AggregateSyncResult:
        self.requests.append(("property", property_id))
        return AggregateSyncResult(
            scope=f"property:{property_id}",
            results=[SyncResult(success=True, entity_key="mp-1", sync_type="energy", records_synced=48, log_id=7)],
        )

    def sync_all_properties(self, *, date_from=None, date_to=None) -> AggregateSyncResult:
        self.requests.append(("all", (date_from, date_to)))
        return AggregateSyncResult(scope="all")

    def sync_metering_point_by_id(self, metering_point_id: str, *, property_id=None, date_from=None, date_to=None) -> SyncResult:
        self.requests.append(("metering_point", metering_point_id))
        return SyncResult(
            success=False,
            entity_key=metering_point_id,
            sync_type="energy",
            error="API rate limit exceeded",
            error_kind="rate_limited",
            log_id=3,
        )


class _FakeWeatherService:
    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.raise_for: set[int | None] = set()

    def sync_weather(self, *, property_id=None, date_from=None, date_to=None, location=None, force=False) -> SyncResult:
        self.requests.append({"property_id": property_id, "force": force, "date_from": date_from})
        if property_id in self.raise_for:
            raise RuntimeError("weather exploded")
        return SyncResult(
            success=True,
            entity_key=f"property:{property_id}" if property_id is not None else "55.0444,9.4117",
            sync_type="weather_historical",
            records_synced=24,
            log_id=11,
        )


class SyncSchedulerTestBase(TestCase):
    now = datetime(2024, 1, 17, 10, 0, tzinfo=timezone.utc)

    def setUp(self) -> None:
        self.session_factory = build_session_factory()
        self.energy = _FakeEnergyService()
        self.weather = _FakeWeatherService()

    def _scheduler(self, **setting_overrides: Any) -> SyncSchedulerService:
        return SyncSchedulerService(
            settings=Settings(**setting_overrides),
            session_factory=self.session_factory,
            energy_service=self.energy,  # type: ignore[arg-type]
            weather_service=self.weather,  # type: ignore[arg-type]
            clock=lambda: self.now,
        )


class SchedulerConfigurationTests(SyncSchedulerTestBase):
    def test_invalid_cron_disables_only_that_domain(self) -> None:
        scheduler = self._scheduler(energy_sync_schedule="not a cron")
        snapshot = scheduler.get_status_snapshot()

        self.assertFalse(snapshot["energy"]["enabled"])
        self.assertIn("Wrong number of fields", snapshot["energy"]["disabled_reason"])
        self.assertTrue(snapshot["weather"]["enabled"])
        self.assertEqual(snapshot["weather"]["schedule"], "5 14 * * *")

    def test_invalid_timezone_disables_only_that_domain(self) -> None:
        scheduler = self._scheduler(weather_sync_timezone="Nowhere/Land")
        self.assertTrue(scheduler.is_domain_enabled("energy"))
        self.assertFalse(scheduler.is_domain_enabled("weather"))

    def test_disabled_by_configuration(self) -> None:
        scheduler = self._scheduler(energy_sync_enabled=False, weather_sync_enabled=False)
        snapshot = scheduler.get_status_snapshot()
        self.assertEqual(snapshot["energy"]["disabled_reason"], "disabled by configuration")
        self.assertFalse(snapshot["weather"]["enabled"])

    def test_start_and_stop_are_idempotent(self) -> None:
        scheduler = self._scheduler(weather_sync_enabled=False)
        scheduler.start()
        scheduler.start()
        self.assertTrue(scheduler.get_status_snapshot()["running"])

        scheduler.stop()
        scheduler.stop()
        snapshot = scheduler.get_status_snapshot()
        self.assertFalse(snapshot["running"])
        self.assertIsNone(snapshot["energy"]["next_due_ts"])

    def test_start_reconciles_stale_in_progress_logs(self) -> None:
        with self.session_factory() as db:
            stale = add_sync_log(
                db,
                entity_key="mp-1",
                sync_type="energy",
                status="in_progress",
                created_at=datetime.now(timezone.utc) - timedelta(days=2),
            )
        scheduler = self._scheduler(energy_sync_enabled=False, weather_sync_enabled=False)
        scheduler.start()
        scheduler.stop()

        with self.session_factory() as db:
            self.assertEqual(get_sync_log(db, stale.id).status, "error")


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class CronTriggerTests(TestCase):
    def test_daily_schedule_follows_local_offsets(self) -> None:
        trigger = build_cron_trigger("0 14 * * *", "Europe/Copenhagen")
        self.assertEqual(next_fire_utc(trigger, _utc(2024, 1, 15, 10, 0)), _utc(2024, 1, 15, 13, 0))
        self.assertEqual(next_fire_utc(trigger, _utc(2024, 7, 1, 0, 0)), _utc(2024, 7, 1, 12, 0))

    def test_next_fire_after_a_tick_skips_fired_and_missed_instants(self) -> None:
        trigger = build_cron_trigger("0 14 * * *", "Europe/Copenhagen")
        due = _utc(2024, 1, 15, 13, 0)
        self.assertEqual(next_fire_utc(trigger, due, after=due), _utc(2024, 1, 16, 13, 0))
        self.assertEqual(next_fire_utc(trigger, _utc(2024, 1, 16, 13, 30), after=due), _utc(2024, 1, 17, 13, 0))

    def test_ranges_steps_and_day_names(self) -> None:
        trigger = build_cron_trigger("*/15 8-9,17 * * mon-fri", "UTC")
        self.assertEqual(next_fire_utc(trigger, _utc(2024, 1, 15, 9, 50)), _utc(2024, 1, 15, 17, 0))
        # 2024-01-13 is a Saturday.
        self.assertEqual(next_fire_utc(trigger, _utc(2024, 1, 13, 12, 0)), _utc(2024, 1, 15, 8, 0))

    def test_naive_moment_is_treated_as_utc(self) -> None:
        trigger = build_cron_trigger("0 * * * *", "UTC")
        self.assertEqual(next_fire_utc(trigger, datetime(2024, 1, 15, 10, 30)), _utc(2024, 1, 15, 11, 0))

    def test_invalid_expressions_and_timezones_are_rejected(self) -> None:
        for expression, timezone_name in (
            ("61 * * * *", "UTC"),
            ("* * *", "UTC"),
            ("0 14 * * *", "Mars/Olympus_Mons"),
            ("0 14 * * *", ""),
        ):
            with self.subTest(expression=expression, timezone=timezone_name):
                with self.assertRaises(ValueError):
                    build_cron_trigger(expression, timezone_name)


class SchedulerRestartTests(SyncSchedulerTestBase):
    def test_restart_during_running_tick_keeps_ticks_serialized(self) -> None:
        # The fixed clock sits on a minute boundary, so the loop ticks immediately.
        scheduler = self._scheduler(energy_sync_schedule="* * * * *", weather_sync_enabled=False)
        scheduler._join_timeout_seconds = 0.05
        tick_started = Event()
        release = Event()
        self.addCleanup(release.set)
        counter_lock = Lock()
        counters = {"calls": 0, "active": 0, "peak": 0}

        def blocking_tick() -> AggregateSyncResult:
            with counter_lock:
                counters["calls"] += 1
                counters["active"] += 1
                counters["peak"] = max(counters["peak"], counters["active"])
            tick_started.set()
            release.wait(5.0)
            with counter_lock:
                counters["active"] -= 1
            return AggregateSyncResult(scope="scheduled:energy")

        scheduler._ticks["energy"] = blocking_tick
        scheduler.start()
        self.assertTrue(tick_started.wait(5.0))
        first_loop = scheduler._domains["energy"].thread
        assert first_loop is not None

        scheduler.stop()
        self.assertTrue(first_loop.is_alive())
        scheduler.start()
        self.addCleanup(scheduler.stop)
        second_loop = scheduler._domains["energy"].thread
        assert second_loop is not None

        # The new loop finds the tick lock held, skips, and arms the next minute.
        skipped = Event()
        for _ in range(100):
            if scheduler._domains["energy"].next_due_ts == _utc(2024, 1, 17, 10, 1):
                skipped.set()
                break
            skipped.wait(0.05)
        self.assertTrue(skipped.is_set())

        release.set()
        first_loop.join(timeout=5.0)

        self.assertFalse(first_loop.is_alive())
        self.assertTrue(second_loop.is_alive())
        self.assertEqual(counters["calls"], 1)
        self.assertEqual(counters["peak"], 1)


class SchedulerTickTests(SyncSchedulerTestBase):
    def test_energy_tick_isolates_failing_metering_points(self) -> None:
        with self.session_factory() as db:
            add_property(db, name="A", metering_point_ids=("mp-1", "mp-2"))
            add_property(db, name="B", metering_point_ids=("mp-3",))
        self.energy.failing.add("mp-2")

        result = self._scheduler().run_energy_tick()

        self.assertEqual(self.energy.synced, ["mp-1", "mp-2", "mp-3"])
        self.assertEqual(result.error_count, 1)
        self.assertEqual(result.records_synced, 48)
        failed = result.results[1]
        self.assertEqual(failed.error_kind, "unexpected")
        self.assertEqual(failed.error, "Unexpected error: adapter exploded")

    def test_weather_tick_uses_default_location_without_properties(self) -> None:
        result = self._scheduler().run_weather_tick()
        self.assertTrue(result.success)
        self.assertEqual([request["property_id"] for request in self.weather.requests], [None])

    def test_weather_tick_covers_enabled_properties_only(self) -> None:
        with self.session_factory() as db:
            first = add_property(db, name="A")
            add_property(db, name="B", weather_sync_enabled=False)
            third = add_property(db, name="C")
        self.weather.raise_for.add(first.id)

        result = self._scheduler().run_weather_tick()

        self.assertEqual([request["property_id"] for request in self.weather.requests], [first.id, third.id])
        self.assertEqual(result.error_count, 1)
        self.assertEqual(result.records_synced, 24)

    def test_tick_catch_all_records_error_in_status(self) -> None:
        scheduler = self._scheduler()
        with patch(
            "app.services.sync_scheduler.list_properties",
            side_effect=RuntimeError("database gone"),
        ):
            scheduler._run_tick(scheduler._domains["energy"])

        energy_status = scheduler.get_status_snapshot()["energy"]
        self.assertFalse(energy_status["last_tick_success"])
        self.assertEqual(energy_status["last_error"], "database gone")
        self.assertIsNotNone(energy_status["last_tick_finished_ts"])

    def test_successful_tick_updates_status(self) -> None:
        scheduler = self._scheduler()
        scheduler._run_tick(scheduler._domains["weather"])
        weather_status = scheduler.get_status_snapshot()["weather"]
        self.assertTrue(weather_status["last_tick_success"])
        self.assertEqual(weather_status["last_tick_records"], 24)
        self.assertIsNone(weather_status["last_error"])


class ManualTriggerTests(SyncSchedulerTestBase):
    def test_both_domains_are_combined(self) -> None:
        result = self._scheduler().trigger_manual_sync(domain="both", property_id=5, force=True)

        self.assertTrue(result["success"])
        self.assertEqual(result["records_synced"], 48 + 24)
        self.assertEqual(result["log_id"], 11)
        self.assertIsNone(result["error"])
        self.assertEqual(self.energy.requests, [("property", 5)])
        self.assertEqual(self.weather.requests, [{"property_id": 5, "force": True, "date_from": None}])
        self.assertEqual(result["energy"]["scope"], "property:5")
        self.assertEqual(result["weather"]["entity_key"], "property:5")

    def test_energy_only_for_one_metering_point(self) -> None:
        result = self._scheduler().trigger_manual_sync(domain="energy", metering_point_id="mp-9")

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "1 energy sync(s) failed")
        self.assertEqual(result["log_id"], 3)
        self.assertIsNone(result["weather"])
        self.assertEqual(self.weather.requests, [])

    def test_manual_range_is_forwarded(self) -> None:
        self._scheduler().trigger_manual_sync(
            domain="energy",
            date_from=date(2024, 1, 1),
            date_to=date(2024, 1, 2),
        )
        self.assertEqual(self.energy.requests, [("all", (date(2024, 1, 1), date(2024, 1, 2)))])

    def test_unknown_domain_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._scheduler().trigger_manual_sync(domain="solar")


class SyncHealthTests(SyncSchedulerTestBase):
    def test_health_without_history(self) -> None:
        self.assertEqual(
            self._scheduler().get_sync_health(),
            {"last_run": None, "last_status": None, "records_synced": 0},
        )

    def test_health_reports_latest_log_entry(self) -> None:
        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            add_sync_log(db, entity_key="mp-1", sync_type="energy", status="error", created_at=now - timedelta(hours=1))
            add_sync_log(db, entity_key="mp-1", sync_type="energy", status="success", created_at=now, records_synced=24)

        health = self._scheduler().get_sync_health()

        self.assertEqual(health["last_status"], "success")
        self.assertEqual(health["records_synced"], 24)
        self.assertIsNotNone(health["last_run"])
