"""HTTP and WebSocket surface, exercised through FastAPI's TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from device_relay.errors import TransportError
from device_relay.main import create_app

TELEMETRY = b'{"temperature": 21, "humidity": 40}'


@pytest.fixture
def client(settings, registry, store, transport):
    app = create_app(settings, registry=registry, store=store, transport=transport)
    with TestClient(app) as c:
        yield c


def _as(identity: str) -> dict:
    return {"X-User-Id": identity}


def _ingest(client: TestClient, topic: str, payload: bytes):
    relay = client.app.state.relay
    return client.portal.call(relay.ingestor.handle_message, topic, payload)


def _register(client: TestClient, identity: str, device_id: str = "climate01"):
    return client.post("/api/devices", json={"device_id": device_id}, headers=_as(identity))


def test_startup_starts_transport(client, transport) -> None:
    assert transport.started


def test_list_device_types(client) -> None:
    resp = client.get("/api/device-types")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    climate = next(t for t in body["data"] if t["type_id"] == "climate")
    assert climate["commands"] == ["threshold"]
    assert climate["rules"]["threshold"] == {"kind": "number", "min": 0, "max": 40}


def test_register_and_list(client) -> None:
    resp = _register(client, "42")
    assert resp.status_code == 200
    assert resp.json()["data"]["settings"] == {"threshold": 25}

    devices = client.get("/api/devices", headers=_as("42")).json()["data"]
    assert [d["device_id"] for d in devices] == ["climate01"]
    assert devices[0]["last_seen"] is None
    assert client.get("/api/devices", headers=_as("99")).json()["data"] == []


def test_register_errors(client) -> None:
    assert _register(client, "42", "ghost01").json()["error"] == "unknown_device"
    assert client.post("/api/devices", json={"device_id": "climate01"}).status_code == 401

    _register(client, "42")
    resp = _register(client, "99")
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"
    assert "42" not in resp.json()["message"]


def test_latest_scenario(client) -> None:
    _register(client, "42")
    _ingest(client, "devices/climate01/data", TELEMETRY)

    resp = client.get("/api/devices/climate01/latest", headers=_as("42"))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["temperature"] == 21
    assert data["humidity"] == 40
    assert data["device_id"] == "climate01"
    assert data["timestamp"]
    assert client.get("/api/devices/climate01/latest", headers=_as("42")).json()["data"] == data

    forbidden = client.get("/api/devices/climate01/latest", headers=_as("99"))
    assert forbidden.status_code == 403
    assert forbidden.json() == {
        "ok": False,
        "data": None,
        "error": "forbidden",
        "message": "Access to this device is not allowed",
    }


def test_latest_before_any_telemetry(client) -> None:
    _register(client, "42")
    data = client.get("/api/devices/climate01/latest", headers=_as("42")).json()["data"]
    assert data == {"device_id": "climate01", "timestamp": None}


def test_authorization_order(client) -> None:
    assert client.get("/api/devices/ghost01/latest").status_code == 401
    resp = client.get("/api/devices/ghost01/latest", headers=_as("42"))
    assert resp.status_code == 404
    assert resp.json()["error"] == "unknown_device"


def test_out_of_range_threshold_scenario(client, transport) -> None:
    _register(client, "42")

    resp = client.put("/api/devices/climate01/settings", json={"settings": {"threshold": 50}}, headers=_as("42"))

    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    transport.publish.assert_not_awaited()
    devices = client.get("/api/devices", headers=_as("42")).json()["data"]
    assert devices[0]["settings"] == {"threshold": 25}


def test_valid_threshold_is_published(client, transport) -> None:
    _register(client, "42")

    resp = client.put("/api/devices/climate01/settings", json={"settings": {"threshold": 30}}, headers=_as("42"))

    assert resp.status_code == 200
    assert resp.json()["data"]["published"] == ["threshold"]
    transport.publish.assert_awaited_once_with("devices/climate01/threshold", "30")


def test_unknown_command(client, transport) -> None:
    _register(client, "42")
    resp = client.put("/api/devices/climate01/settings", json={"settings": {"power": True}}, headers=_as("42"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "unknown_command"
    transport.publish.assert_not_awaited()


def test_malformed_body_is_structured(client) -> None:
    resp = client.put("/api/devices/climate01/settings", json={"threshold": 30}, headers=_as("42"))
    assert resp.status_code == 400
    assert resp.json()["ok"] is False
    assert resp.json()["error"] == "validation_error"


def test_rename_and_release(client) -> None:
    _register(client, "42")

    resp = client.put("/api/devices/climate01", json={"name": "Bedroom"}, headers=_as("42"))
    assert resp.json()["data"]["name"] == "Bedroom"
    assert client.put("/api/devices/climate01", json={"name": "Mine"}, headers=_as("99")).status_code == 403

    assert client.delete("/api/devices/climate01", headers=_as("99")).status_code == 403
    assert client.delete("/api/devices/climate01", headers=_as("42")).status_code == 200
    assert client.get("/api/devices/climate01/latest", headers=_as("42")).status_code == 403
    assert _register(client, "99").status_code == 200


def test_health(client) -> None:
    _ingest(client, "devices/ghost01/data", TELEMETRY)
    body = client.get("/api/health").json()["data"]
    assert body["mqtt"]["connected"] is True
    assert body["store"]["available"] is True
    assert body["ingest"]["dropped_unknown"] == 1


class TestWebSocket:
    def test_handshake(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
            ws.send_json({"type": "whatever"})
            assert ws.receive_json() == {"type": "error", "message": "Not authenticated"}
            ws.send_json({"type": "auth", "identity": "42"})
            assert ws.receive_json() == {"type": "auth_success", "identity": "42"}

    def test_device_update_reaches_owner(self, client) -> None:
        _register(client, "42")
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "auth", "identity": "42"})
            ws.receive_json()

            _ingest(client, "devices/climate01/data", TELEMETRY)

            msg = ws.receive_json()
            assert msg["type"] == "device_update"
            assert msg["device_id"] == "climate01"
            assert msg["data"]["temperature"] == 21
            assert msg["timestamp"] == msg["data"]["timestamp"]

    def test_notification_on_rename(self, client) -> None:
        _register(client, "42")
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "auth", "identity": "42"})
            ws.receive_json()

            client.put("/api/devices/climate01", json={"name": "Bedroom"}, headers=_as("42"))

            assert ws.receive_json() == {"type": "notification", "message": "Device climate01 renamed to Bedroom"}


def test_release_clears_undelivered_settings(client, transport) -> None:
    _register(client, "42")
    transport.publish.side_effect = TransportError("MQTT not connected")
    resp = client.put("/api/devices/climate01/settings", json={"settings": {"threshold": 30}}, headers=_as("42"))
    assert resp.status_code == 502

    assert client.delete("/api/devices/climate01", headers=_as("42")).status_code == 200
    assert client.app.state.relay.publisher.unsynced("climate01") == set()

    transport.publish.side_effect = None
    transport.publish.reset_mock()
    _register(client, "99")
    resp = client.put("/api/devices/climate01/settings", json={"settings": {"threshold": 25}}, headers=_as("99"))
    assert resp.status_code == 200
    assert resp.json()["data"]["published"] == []
    transport.publish.assert_not_awaited()
