"""Tests for REST API endpoints.

Covers the device callbacks (relay webhook, scanner callback) and the
operator API.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from models import AccessControlSection, AccessState, AccessStatus, ScanOutcome
from routers.scanner import extract_code, parse_event_time


@pytest.fixture
def runtime() -> MagicMock:
    """Access runtime with mocked components."""
    rt = MagicMock()
    rt.store.initialize = AsyncMock()
    rt.store.load = AsyncMock(return_value=AccessState())
    rt.store.last_known = AccessState()
    rt.reconciler.handle_events = AsyncMock(return_value=AccessState())
    rt.workflow.handle_scan = AsyncMock(return_value=ScanOutcome.REQUESTED)
    rt.watchdog.stop = AsyncMock()
    rt.watchdog.cycle = None
    rt.watchdog.is_running = True
    rt.dispatcher.drain = AsyncMock()
    rt.dispatcher.cancel_all = AsyncMock()
    rt.dispatcher.pending_count = 0
    return rt


@pytest.fixture
def client(runtime: MagicMock):
    """Create test client with mocked dependencies."""
    with patch("main.load_config"), \
         patch("main.init_db", new_callable=AsyncMock), \
         patch("main.close_db", new_callable=AsyncMock), \
         patch("main.get_runtime", return_value=runtime), \
         patch("main.reset_runtime"), \
         patch("routers.inputs.get_runtime", return_value=runtime), \
         patch("routers.scanner.get_runtime", return_value=runtime), \
         patch("main.get_mqtt_client") as mock_mqtt, \
         patch("main.start_housekeeping_service"), \
         patch("main.stop_housekeeping_service", new_callable=AsyncMock), \
         patch("main.start_heartbeat_service"), \
         patch("main.stop_heartbeat_service", new_callable=AsyncMock), \
         patch("main.get_ws_manager") as mock_ws:

        mock_mqtt.return_value.is_connected = True
        mock_mqtt.return_value.last_seen_seconds = 5
        mock_mqtt.return_value.connect = lambda x: None
        mock_mqtt.return_value.disconnect = lambda: None
        mock_ws.return_value.start_status_updates = lambda x: None
        mock_ws.return_value.stop_status_updates = AsyncMock()

        from main import app
        with TestClient(app) as c:
            yield c


def _scan_event(code: str = "QR-1", at: datetime | None = None) -> dict:
    at = at or datetime.now(timezone.utc)
    return {
        "ipAddress": "10.0.0.20",
        "dateTime": at.isoformat(),
        "eventType": "AccessControllerEvent",
        "AccessControllerEvent": {"majorEventType": 5, "cardNo": code},
    }


class TestHealthEndpoint:
    """Test cases for health check endpoint."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        with patch("main.get_audit_count_24h", new_callable=AsyncMock, return_value=0):
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["mqtt_connected"] is True
        assert data["relay_last_seen_seconds"] == 5

    def test_health_reports_database_failure(self, client: TestClient) -> None:
        with patch("main.get_audit_count_24h", new_callable=AsyncMock, side_effect=RuntimeError("closed")):
            response = client.get("/health")

        data = response.json()
        assert data["ok"] is False
        assert data["db_ok"] is False


class TestStateEndpoints:
    def test_state_uses_document_layout(self, client: TestClient, runtime: MagicMock) -> None:
        runtime.store.load.return_value = AccessState(
            access_control=AccessControlSection(access_state=AccessStatus.GRANT)
        )

        response = client.get("/v1/state")

        assert response.status_code == 200
        data = response.json()
        assert data["accessControle"] == {"accessState": "grant", "pendingCounter": 0}
        assert data["door"] == {"doorState": "Close"}

    def test_stats(self, client: TestClient) -> None:
        with patch("main.get_audit_count_24h", new_callable=AsyncMock, return_value=4):
            response = client.get("/v1/stats")

        assert response.json() == {
            "door_state": "Close",
            "access_state": "noAccess",
            "audit_events_last_24h": 4,
        }


class TestRelayWebhook:
    """Test cases for the relay controller webhook."""

    def test_batch_forwarded(self, client: TestClient, runtime: MagicMock) -> None:
        events = [{"input": 1, "state": False}, {"input": 0, "state": True}]

        response = client.post("/shelly", json=events)

        assert response.status_code == 200
        assert response.text == "OK"
        runtime.reconciler.handle_events.assert_awaited_once_with(events)

    def test_single_event_wrapped(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post("/shelly", json={"id": 1, "value": True})

        assert response.status_code == 200
        runtime.reconciler.handle_events.assert_awaited_once_with([{"id": 1, "value": True}])

    def test_non_json_rejected(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post("/shelly", content=b"input=1", headers={"Content-Type": "text/plain"})

        assert response.status_code == 400
        assert response.text == "Bad event format"
        runtime.reconciler.handle_events.assert_not_awaited()

    def test_empty_batch_rejected(self, client: TestClient) -> None:
        response = client.post("/shelly", json=[])

        assert response.status_code == 400
        assert response.text == "Empty body"


class TestScannerCallback:
    """Test cases for the QR access terminal callback."""

    def test_json_scan_forwarded(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post("/qrScanner", json=_scan_event("QR-1"))

        assert response.status_code == 200
        assert response.text == "OK"
        runtime.workflow.handle_scan.assert_awaited_once_with("QR-1", ANY)

    def test_multipart_scan_forwarded(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post(
            "/qrScanner",
            files={"AccessControllerEvent": (None, json.dumps(_scan_event("QR-2")))},
        )

        assert response.status_code == 200
        runtime.workflow.handle_scan.assert_awaited_once_with("QR-2", ANY)

    def test_nested_event_string_forwarded(self, client: TestClient, runtime: MagicMock) -> None:
        event = _scan_event("QR-3")
        event["AccessControllerEvent"] = json.dumps(event["AccessControllerEvent"])

        response = client.post("/qrScanner", json=event)

        assert response.status_code == 200
        runtime.workflow.handle_scan.assert_awaited_once_with("QR-3", ANY)

    def test_nested_event_not_json_rejected(self, client: TestClient, runtime: MagicMock) -> None:
        event = _scan_event()
        event["AccessControllerEvent"] = "{nope"

        response = client.post("/qrScanner", json=event)

        assert response.status_code == 400
        runtime.workflow.handle_scan.assert_not_awaited()

    def test_heartbeat_ignored(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post("/qrScanner", json={"eventType": "heartBeat", "dateTime": "2026-01-01T00:00:00"})

        assert response.text == "OK"
        runtime.workflow.handle_scan.assert_not_awaited()

    @pytest.mark.parametrize("offset", [timedelta(seconds=-60), timedelta(seconds=60)])
    def test_stale_or_future_event_ignored(
        self, client: TestClient, runtime: MagicMock, offset: timedelta
    ) -> None:
        at = datetime.now(timezone.utc) + offset

        response = client.post("/qrScanner", json=_scan_event(at=at))

        assert response.status_code == 200
        runtime.workflow.handle_scan.assert_not_awaited()

    def test_missing_time_ignored(self, client: TestClient, runtime: MagicMock) -> None:
        response = client.post("/qrScanner", json={"AccessControllerEvent": {"cardNo": "QR-1"}})

        assert response.status_code == 200
        runtime.workflow.handle_scan.assert_not_awaited()

    def test_event_without_code_ignored(self, client: TestClient, runtime: MagicMock) -> None:
        event = _scan_event()
        event["AccessControllerEvent"] = {"majorEventType": 5}

        response = client.post("/qrScanner", json=event)

        assert response.status_code == 200
        runtime.workflow.handle_scan.assert_not_awaited()

    def test_bad_body_rejected(self, client: TestClient) -> None:
        response = client.post("/qrScanner", content=b"{nope", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.text == "Bad event format"

    def test_code_fields(self) -> None:
        assert extract_code({"cardNo": "", "qrCodeInfo": "ABC"}) == "ABC"
        assert extract_code({"cardNumber": 12345}) == "12345"
        assert extract_code({}) is None

    def test_event_time_parsing(self) -> None:
        assert parse_event_time("2026-10-18T08:00:00Z") == parse_event_time("2026-10-18T10:00:00+02:00")
        assert parse_event_time("yesterday") is None
        assert parse_event_time(None) is None

    def test_local_time_without_offset(self, client: TestClient, runtime: MagicMock) -> None:
        event = _scan_event(at=datetime.now().replace(microsecond=0))

        client.post("/qrScanner", json=event)

        runtime.workflow.handle_scan.assert_awaited_once()


class TestAuditEndpoints:
    """Test cases for audit API endpoints."""

    ITEMS = [{"id": 1, "name": "✅ Zugang gewährt", "message": "Tür geöffnet", "tags": ["api", "QR"], "created_at": 1700000000}]

    def test_list_audit_events(self, client: TestClient) -> None:
        with patch("routers.audit.get_audit_events_paginated", new_callable=AsyncMock) as mock_list:
            mock_list.return_value = (self.ITEMS, 1)

            response = client.get("/v1/audit?page=1&limit=10&from=2023-11-01&to=2023-11-30")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["name"] == "✅ Zugang gewährt"
        kwargs = mock_list.await_args.kwargs
        assert kwargs["from_ts"] == 1698796800
        assert kwargs["to_ts"] == 1701388799

    def test_export_csv(self, client: TestClient) -> None:
        with patch("routers.audit.get_audit_events_paginated", new_callable=AsyncMock) as mock_list:
            mock_list.return_value = (self.ITEMS, 1)

            response = client.get("/v1/audit/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0] == "ID,Name,Message,Tags,Created At"
        assert lines[1].startswith("1,✅ Zugang gewährt,Tür geöffnet,api;QR,")


class TestConfigEndpoints:
    """Test cases for configuration API endpoints."""

    def test_secrets_masked(self, client: TestClient) -> None:
        response = client.get("/v1/config")

        assert response.status_code == 200
        assert response.json()["config"]["authorizer"]["token"] == "***"

    def test_token_required_when_enabled(self, client: TestClient, access_config) -> None:
        access_config.auth.enabled = True
        access_config.auth.token = "edge"

        assert client.get("/v1/config").status_code == 401
        assert client.get("/v1/config", headers={"X-Edge-Token": "edge"}).status_code == 200

    def test_partial_update(self, client: TestClient) -> None:
        with patch("routers.config_router.save_config") as mock_save:
            response = client.put("/v1/config", json={"door": {"max_time_open_seconds": 120}})

        assert response.status_code == 200
        assert response.json()["config"]["door"]["max_time_open_seconds"] == 120
        assert mock_save.call_args.args[0].door.exit_grace_seconds == 10

    def test_invalid_update_rejected(self, client: TestClient) -> None:
        with patch("routers.config_router.save_config") as mock_save:
            response = client.put("/v1/config", json={"scanner": {"max_pending": 0}})

        assert response.status_code == 400
        mock_save.assert_not_called()
