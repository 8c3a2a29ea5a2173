from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from unittest import TestCase

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.sync import router as sync_router
from app.core.config import Settings
from app.db.session import get_db
from app.dependencies import get_settings_from_app, get_sync_scheduler, get_weather_sync_service
from app.services.sync_results import BackfillResult, SyncResult
from sqlite_support import add_sync_log, build_session_factory


class _FakeScheduler:
    def __init__(self, *, success: bool = True) -> None:
        self.success = success
        self.trigger_calls: list[dict[str, Any]] = []

    def trigger_manual_sync(self, **kwargs: Any) -> dict[str, Any]:
        self.trigger_calls.append(kwargs)
        return {
            "success": self.success,
            "records_synced": 24 if self.success else 0,
            "log_id": 1,
            "error": None if self.success else "Authentication failed - invalid or expired token",
            "energy": None,
            "weather": {
                "success": self.success,
                "entity_key": "55.0444,9.4117",
                "sync_type": "weather_historical",
                "records_synced": 24 if self.success else 0,
                "log_id": 1,
                "date_from": "2024-01-15",
                "date_to": "2024-01-15",
                "error": None,
                "error_kind": None,
                "up_to_date": False,
                "message": None,
            },
        }

    def get_sync_health(self) -> dict[str, Any]:
        return {"last_run": "2024-01-17T13:00:05+00:00", "last_status": "success", "records_synced": 24}

    def get_status_snapshot(self) -> dict[str, Any]:
        domain = {
            "enabled": True,
            "sync_type": "energy",
            "schedule": "0 14 * * *",
            "timezone": "Europe/Copenhagen",
            "disabled_reason": None,
            "next_due_ts": "2024-01-18T13:00:00+00:00",
            "last_tick_started_ts": None,
            "last_tick_finished_ts": None,
            "last_tick_success": None,
            "last_tick_records": 0,
            "last_error": None,
        }
        return {"running": True, "energy": domain, "weather": {**domain, "sync_type": "weather_historical"}}


class _FakeWeatherService:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def backfill(self, **kwargs: Any) -> BackfillResult:
        self.calls.append(kwargs)
        return BackfillResult(
            total_records=48,
            results=[
                SyncResult(success=True, entity_key="55.0444,9.4117", sync_type="weather_historical", records_synced=48, log_id=4),
            ],
        )


class SyncApiTestBase(TestCase):
    admin_token: str | None = "secret"

    def setUp(self) -> None:
        self.scheduler = _FakeScheduler()
        self.weather = _FakeWeatherService()
        self.session_factory = build_session_factory()
        settings = Settings(admin_token=self.admin_token)

        def _get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app = FastAPI()
        app.include_router(sync_router)
        app.dependency_overrides[get_settings_from_app] = lambda: settings
        app.dependency_overrides[get_sync_scheduler] = lambda: self.scheduler
        app.dependency_overrides[get_weather_sync_service] = lambda: self.weather
        app.dependency_overrides[get_db] = _get_db
        self.client = TestClient(app)


class AdminTokenTests(SyncApiTestBase):
    def test_missing_bearer_is_unauthorized(self) -> None:
        response = self.client.post("/api/sync/trigger", json={})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Missing or invalid authorization header")
        self.assertEqual(self.scheduler.trigger_calls, [])

    def test_wrong_token_is_forbidden(self) -> None:
        response = self.client.post(
            "/api/sync/trigger",
            json={},
            headers={"Authorization": "Bearer nope"},
        )
        self.assertEqual(response.status_code, 403)

    def test_backfill_requires_token(self) -> None:
        response = self.client.post(
            "/api/sync/weather/backfill",
            json={"start_date": "2024-01-01", "end_date": "2024-01-02"},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.weather.calls, [])

    def test_health_and_status_are_public(self) -> None:
        self.assertEqual(self.client.get("/api/sync/health").status_code, 200)
        self.assertEqual(self.client.get("/api/sync/status").status_code, 200)


class OpenAdminTests(SyncApiTestBase):
    admin_token = None

    def test_unset_admin_token_leaves_trigger_open(self) -> None:
        response = self.client.post("/api/sync/trigger", json={"domain": "weather"})
        self.assertEqual(response.status_code, 200)


class SyncRoutesTests(SyncApiTestBase):
    auth = {"Authorization": "Bearer secret"}

    def test_trigger_forwards_request_and_reports_success(self) -> None:
        response = self.client.post(
            "/api/sync/trigger",
            json={
                "domain": "both",
                "property_id": 2,
                "date_from": "2024-01-15",
                "date_to": "2024-01-15",
                "force": True,
            },
            headers=self.auth,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["records_synced"], 24)
        self.assertEqual(body["message"], "Sync completed successfully")
        self.assertEqual(body["weather"]["date_from"], "2024-01-15")
        self.assertEqual(
            self.scheduler.trigger_calls,
            [
                {
                    "domain": "both",
                    "property_id": 2,
                    "metering_point_id": None,
                    "date_from": date(2024, 1, 15),
                    "date_to": date(2024, 1, 15),
                    "force": True,
                }
            ],
        )

    def test_failed_trigger_returns_server_error(self) -> None:
        self.scheduler.success = False
        response = self.client.post("/api/sync/trigger", json={"domain": "energy"}, headers=self.auth)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["message"], "Sync failed")
        self.assertEqual(response.json()["error"], "Authentication failed - invalid or expired token")

    def test_trigger_validation(self) -> None:
        for payload in (
            {"domain": "solar"},
            {"date_from": "2024-01-15"},
            {"date_from": "2024-01-16", "date_to": "2024-01-15"},
        ):
            with self.subTest(payload=payload):
                response = self.client.post("/api/sync/trigger", json=payload, headers=self.auth)
                self.assertEqual(response.status_code, 422)
        self.assertEqual(self.scheduler.trigger_calls, [])

    def test_weather_backfill(self) -> None:
        response = self.client.post(
            "/api/sync/weather/backfill",
            json={"start_date": "2023-01-01", "end_date": "2023-01-02", "latitude": 56.1, "longitude": 10.2},
            headers=self.auth,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_records"], 48)
        self.assertEqual(response.json()["batches"], 1)
        call = self.weather.calls[0]
        self.assertEqual(call["start_date"], date(2023, 1, 1))
        self.assertEqual((call["location"].latitude, call["location"].longitude), (56.1, 10.2))

    def test_health_payload(self) -> None:
        body = self.client.get("/api/sync/health").json()
        self.assertEqual(body["last_status"], "success")
        self.assertEqual(body["records_synced"], 24)

    def test_status_payload(self) -> None:
        body = self.client.get("/api/sync/status").json()
        self.assertTrue(body["running"])
        self.assertEqual(body["energy"]["schedule"], "0 14 * * *")
        self.assertEqual(body["weather"]["sync_type"], "weather_historical")

    def test_logs_are_filtered_and_newest_first(self) -> None:
        with self.session_factory() as db:
            add_sync_log(
                db,
                entity_key="mp-1",
                sync_type="energy",
                status="success",
                created_at=datetime(2024, 1, 16, 13, 0, tzinfo=timezone.utc),
                records_synced=24,
            )
            add_sync_log(
                db,
                entity_key="mp-1",
                sync_type="energy",
                status="error",
                created_at=datetime(2024, 1, 17, 13, 0, tzinfo=timezone.utc),
            )
            add_sync_log(
                db,
                entity_key="property:1",
                sync_type="weather_historical",
                status="success",
                created_at=datetime(2024, 1, 17, 13, 5, tzinfo=timezone.utc),
            )

        all_rows = self.client.get("/api/sync/logs").json()
        energy_rows = self.client.get("/api/sync/logs", params={"sync_type": "energy"}).json()
        errors = self.client.get("/api/sync/logs", params={"status": "error", "limit": 5}).json()

        self.assertEqual([row["entity_key"] for row in all_rows], ["property:1", "mp-1", "mp-1"])
        self.assertEqual([row["status"] for row in energy_rows], ["error", "success"])
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["records_synced"], 0)
