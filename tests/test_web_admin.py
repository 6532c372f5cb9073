import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from plannersync.errors import DiscoveryError
from plannersync.models import CalendarInfo
from plannersync.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        self.env = mock.patch.dict(
            os.environ,
            {"PLANNERSYNC_CONFIG_PATH": self.config_path, "PLANNERSYNC_STATE_PATH": self.state_path},
        )
        self.env.start()
        self.app = create_app()
        self.client = TestClient(self.app)

        seed_payload = {
            "caldav": {"server_url": "https://dav.example.com", "username": "u", "password": "secret-pass"},
            "sync": {"interval_seconds": 300, "timezone": "UTC"},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_is_masked(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["caldav"]["password"], "***")
        self.assertEqual(data["sync"]["interval_seconds"], 300)

    def test_put_config_masked_or_empty_secret_does_not_override(self) -> None:
        for password in ("***", ""):
            resp = self.client.put(
                "/api/config",
                json={"payload": {"caldav": {"server_url": "https://dav-2.example.com", "password": password}}},
            )
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["config"]["caldav"]["server_url"], "https://dav-2.example.com")
        stored = self.app.state.context.config_manager.load()
        self.assertEqual(stored.caldav.password, "secret-pass")

    def test_caldav_test_reports_connection(self) -> None:
        service = mock.Mock()
        service.check_connection.return_value = (True, "Connected. Found 2 calendars.", 2)
        with mock.patch("plannersync.web_admin.CalDAVService", return_value=service):
            data = self.client.post("/api/caldav/test").json()
        self.assertEqual(data, {"ok": True, "message": "Connected. Found 2 calendars.", "calendars": 2})

    def test_caldav_test_without_config(self) -> None:
        self.client.put("/api/config", json={"payload": {"caldav": {"server_url": ""}}})
        with mock.patch("plannersync.web_admin.CalDAVService") as service_cls:
            data = self.client.post("/api/caldav/test").json()
        self.assertFalse(data["ok"])
        service_cls.assert_not_called()

    def test_calendars_mark_selected_collection(self) -> None:
        service = mock.Mock()
        service.list_calendars.return_value = [
            CalendarInfo(calendar_id="a", name="Birthdays", url="https://dav.example.com/a/", read_only=True),
            CalendarInfo(calendar_id="b", name="Personal", url="https://dav.example.com/b/"),
        ]
        with mock.patch("plannersync.web_admin.CalDAVService", return_value=service):
            data = self.client.get("/api/calendars").json()
        self.assertEqual(data["selected_url"], "https://dav.example.com/b/")
        self.assertEqual([item["selected"] for item in data["calendars"]], [False, True])

    def test_calendars_discovery_failure(self) -> None:
        service = mock.Mock()
        service.list_calendars.side_effect = DiscoveryError("No calendars available on the CalDAV server.")
        with mock.patch("plannersync.web_admin.CalDAVService", return_value=service):
            resp = self.client.get("/api/calendars")
        self.assertEqual(resp.status_code, 400)

    def test_sync_run_triggers_scheduler(self) -> None:
        with mock.patch.object(self.app.state.context.scheduler, "trigger_manual") as trigger:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        trigger.assert_called_once_with()

    def test_sync_status_and_run_details(self) -> None:
        store = self.app.state.context.state_store
        run_id = store.start_sync_run(trigger="manual")
        store.record_audit_event(activity_id="t1", action="created", details={"tier": None}, run_id=run_id)
        store.finish_sync_run(run_id=run_id, status="success", message="ok", duration_ms=5, created=1)
        store.set_meta("last_target_url", "https://dav.example.com/b/")

        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["runs"][0]["id"], run_id)
        self.assertEqual(status["last_target_url"], "https://dav.example.com/b/")
        self.assertFalse(status["scheduler_running"])

        details = self.client.get(f"/api/sync/runs/{run_id}").json()
        self.assertEqual(details["run"]["created"], 1)
        self.assertEqual([event["activity_id"] for event in details["events"]], ["t1"])

        self.assertEqual(self.client.get(f"/api/sync/runs/{run_id + 1}").status_code, 404)


if __name__ == "__main__":
    unittest.main()
