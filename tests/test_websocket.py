import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from omnisync.main import app


def test_websocket_rejects_missing_token(test_user):
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/events?token=not-a-jwt"):
                pass
    assert exc.value.code == 4001


def test_websocket_sends_connection_frame_and_pong(test_user, test_auth):
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws/events?token={test_auth.token}") as ws:
            first = ws.receive_json()
            assert first["type"] == "connection"
            assert first["data"]["userId"] == str(test_user.id)

            ws.send_text("ping")
            assert ws.receive_text() == "pong"
