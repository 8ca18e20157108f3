"""WebSocket endpoint tests.

Learn: httpx can't speak WebSocket, so these use Starlette's TestClient.
The core is built inside each test with a short heartbeat so the
heartbeat paths run in well under a second.
"""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from herald.config import Settings
from herald.core import build_core
from herald.main import create_app


def _app(interval=30.0, timeout=90.0):
    settings = Settings(
        queue_autostart=False,
        ws_heartbeat_interval_seconds=interval,
        ws_heartbeat_timeout_seconds=timeout,
    )
    core = build_core(settings)
    return create_app(core=core), core


def test_connect_registers_and_disconnect_unregisters():
    app, core = _app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=u1&tenant_id=t1") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["data"] == {"user_id": "u1", "tenant_id": "t1"}
            assert core.registry.is_connected("u1")
            assert core.registry.get_tenant_user_count("t1") == 1

        # Cleanup runs in the handler's finally block after the close frame
        for _ in range(50):
            if not core.registry.is_connected("u1"):
                break
            time.sleep(0.01)
        assert not core.registry.is_connected("u1")
        assert core.registry.get_tenant_user_count("t1") == 0


def test_missing_identity_is_rejected():
    app, _ = _app()
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?user_id=u1") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001


def test_ping_gets_pong_and_bad_json_gets_error():
    app, _ = _app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=u1&tenant_id=t1") as ws:
            ws.receive_json()

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_text("not json{")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["data"]["message"] == "Invalid JSON"


def test_server_sends_heartbeat_ping():
    app, _ = _app(interval=0.05, timeout=5.0)
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=u1&tenant_id=t1") as ws:
            ws.receive_json()
            assert ws.receive_json()["type"] == "ping"


def test_silent_client_is_dropped_after_timeout():
    app, core = _app(interval=0.05, timeout=0.1)
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=u1&tenant_id=t1") as ws:
            ws.receive_json()
            with pytest.raises(WebSocketDisconnect):
                while True:
                    ws.receive_json()
        assert not core.registry.is_connected("u1")


def test_broadcast_reaches_connected_socket():
    app, core = _app()
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=u1&tenant_id=t1") as ws:
            ws.receive_json()
            result = client.portal.call(
                core.registry.broadcast_to_tenant, "t1", {"id": "n-1", "title": "Hi"}
            )
            assert result == {"sent": 1, "total": 1}

            message = ws.receive_json()
            assert message["type"] == "notification"
            assert message["data"]["title"] == "Hi"
