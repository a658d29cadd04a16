from __future__ import annotations

import time

from starlette.testclient import WebSocketTestSession

from app.api import ws as ws_module


def test_events_connection_survives_keepalive_timeout(client) -> None:
    """Ensure that the server side keepalive pings keep the socket open."""

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with client.websocket_connect("/ws/events") as connection:
            _assert_keepalive_sequence(connection)
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    """Observe two keepalive pings with client responses to keep the connection active."""

    snapshot = connection.receive_json()
    assert snapshot["type"] == "snapshot"
    assert snapshot["running"] is True
    assert snapshot["session"]["state"] == "idle"

    time.sleep(0.15)
    ping = connection.receive_json()
    assert ping["type"] == "ping"
    connection.send_json({"type": "pong"})

    time.sleep(0.12)
    ping_again = connection.receive_json()
    assert ping_again["type"] == "ping"
    connection.send_json({"type": "pong"})

    connection.send_json({"type": "ping"})
    pong = connection.receive_json()
    assert pong["type"] == "pong"


def test_events_socket_rejects_malformed_messages(client) -> None:
    with client.websocket_connect("/ws/events") as connection:
        assert connection.receive_json()["type"] == "snapshot"

        connection.send_text("{broken")
        assert connection.receive_json() == {"type": "error", "detail": "Invalid payload"}

        connection.send_json({"type": "signal", "signal": {}})
        assert connection.receive_json() == {"type": "error", "detail": "Missing signal recipient"}

        connection.send_json({"type": "teleport"})
        assert connection.receive_json() == {"type": "error", "detail": "Unsupported message type"}


def test_room_events_are_pushed_to_the_ui(client) -> None:
    with client.websocket_connect("/ws/events") as connection:
        assert connection.receive_json()["type"] == "snapshot"

        created = client.post("/api/rooms", json={"name": "Live"})
        assert created.status_code == 201

        seen: set[str] = set()
        for _ in range(20):
            event = connection.receive_json()
            seen.add(event["type"])
            if {"state", "notice", "sound"} <= seen:
                break
        assert {"state", "notice", "sound"} <= seen

        client.post("/api/session/leave")
