from unittest.mock import MagicMock

import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from auth import _token_from
from broadcaster import NotificationBroadcaster, user_room
from config import TestConfig
from conftest import USER_ID
from media_analysis import MediaAnalysisService
from services import Services


@pytest.fixture
def broadcaster_app(queue, interviews, reports, users):
    b = NotificationBroadcaster()
    svc = Services(queue=queue, broadcaster=b, interviews=interviews, reports=reports, users=users,
                   media_analysis=MediaAnalysisService(queue, None, interviews, reports))
    return create_app(TestConfig, services=svc), b


def _token(app, identity=USER_ID):
    with app.app_context():
        return create_access_token(identity=identity)


def test_user_room():
    assert user_room("abc") == "user:abc"


@pytest.mark.parametrize("auth,header,expected", [
    ({"token": "abc"}, None, "abc"),
    ({"token": "Bearer abc"}, None, "abc"),
    (None, "Bearer xyz", "xyz"),
    ({}, None, None),
    (None, "Bearer   ", None),
])
def test_token_from(auth, header, expected):
    assert _token_from(auth, header) == expected


def test_emit_before_initialize_is_dropped():
    assert NotificationBroadcaster().emit(USER_ID, "analysis:started:x", {}) is False


def test_emitter_mode_needs_a_backplane():
    with pytest.raises(ValueError):
        NotificationBroadcaster().initialize_emitter()


def test_authenticated_client_receives_its_events(broadcaster_app):
    app, b = broadcaster_app
    sio = b.socketio
    client = sio.test_client(app, auth={"token": _token(app)})
    assert client.is_connected()
    assert b.get_connection_stats()["connected"] == 1

    assert b.emit(USER_ID, "analysis:completed:iv-1", {"interviewId": "iv-1", "status": "completed"}) is True
    received = client.get_received()
    assert [m["name"] for m in received] == ["analysis:completed:iv-1"]
    payload = received[0]["args"][0]
    assert payload["status"] == "completed"
    assert "timestamp" in payload

    client.disconnect()
    assert b.get_connection_stats()["connected"] == 0


def test_events_are_scoped_to_the_user(broadcaster_app):
    app, b = broadcaster_app
    client = b.socketio.test_client(app, auth={"token": _token(app)})

    b.emit("someone-else", "analysis:started:iv-2", {"interviewId": "iv-2"})

    assert client.get_received() == []


def test_authorization_header_is_accepted(broadcaster_app):
    app, b = broadcaster_app
    client = b.socketio.test_client(app, headers={"Authorization": f"Bearer {_token(app)}"})
    assert client.is_connected()


@pytest.mark.parametrize("auth", [None, {"token": "garbage"}])
def test_unauthenticated_connection_is_refused(broadcaster_app, auth):
    app, b = broadcaster_app
    client = b.socketio.test_client(app, auth=auth)
    assert not client.is_connected()
    assert b.get_connection_stats()["connected"] == 0


def test_unknown_user_is_refused(broadcaster_app):
    app, b = broadcaster_app
    client = b.socketio.test_client(app, auth={"token": _token(app, identity="64b7f0c2a1b2c3d4e5f6ffff")})
    assert not client.is_connected()


def test_emit_failure_returns_false():
    b = NotificationBroadcaster()
    b.socketio = MagicMock()
    b.socketio.emit.side_effect = RuntimeError("backplane down")
    assert b.emit(USER_ID, "analysis:failed:iv-1", {}) is False


def test_shutdown_disconnects_clients(broadcaster_app):
    app, b = broadcaster_app
    client = b.socketio.test_client(app, auth={"token": _token(app)})
    assert client.is_connected()

    b.shutdown()

    assert b.initialized is False
    assert b.get_connection_stats()["connected"] == 0
