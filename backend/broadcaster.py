# broadcaster.py
from __future__ import annotations
import logging
import threading
from typing import Any, Callable, Dict, Optional

from flask import request
from flask_socketio import SocketIO, join_room, ConnectionRefusedError

from helpers import _iso_now

LOG = logging.getLogger("broadcaster")

# (auth payload from the handshake, Authorization header) -> user id or None
Authenticator = Callable[[Optional[Dict[str, Any]], Optional[str]], Optional[str]]


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class NotificationBroadcaster:
    """Pushes job events to a user's sockets, across instances via the Redis backplane.

    Server mode (`initialize`) accepts connections; emitter mode
    (`initialize_emitter`) only publishes and is what the worker process uses.
    """

    def __init__(self, message_queue: Optional[str] = None, cors_origins: Any = "*"):
        self.message_queue = message_queue
        self.cors_origins = cors_origins
        self.socketio: Optional[SocketIO] = None
        self._authenticate: Optional[Authenticator] = None
        self._connected: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self.socketio is not None

    def initialize(self, app, authenticate: Optional[Authenticator] = None) -> SocketIO:
        self._authenticate = authenticate
        kwargs = {"cors_allowed_origins": self.cors_origins}
        if self.message_queue:
            kwargs["message_queue"] = self.message_queue
        self.socketio = SocketIO(app, **kwargs)
        self._register_handlers(self.socketio)
        LOG.info("socket server initialized (backplane=%s)", "redis" if self.message_queue else "none")
        return self.socketio

    def initialize_emitter(self) -> SocketIO:
        if not self.message_queue:
            raise ValueError("emitter mode requires a message queue url")
        self.socketio = SocketIO(message_queue=self.message_queue)
        LOG.info("socket emitter initialized")
        return self.socketio

    def _register_handlers(self, sio: SocketIO):
        @sio.on("connect")
        def _on_connect(auth=None):
            header = request.headers.get("Authorization")
            user_id = self._authenticate(auth, header) if self._authenticate else None
            if not user_id:
                LOG.warning("socket connection rejected: unauthenticated (sid=%s)", request.sid)
                raise ConnectionRefusedError("Authentication error: invalid or missing token")
            join_room(user_room(user_id))
            with self._lock:
                self._connected[request.sid] = user_id
            LOG.info("user %s connected (sid=%s)", user_id, request.sid)

        @sio.on("disconnect")
        def _on_disconnect(*args):
            with self._lock:
                user_id = self._connected.pop(request.sid, None)
            LOG.info("user %s disconnected (sid=%s)", user_id, request.sid)

    def emit(self, user_id: str, event: str, payload: Dict[str, Any]) -> bool:
        if self.socketio is None:
            LOG.warning("broadcaster not initialized, dropping %s for user %s", event, user_id)
            return False
        body = {**payload, "timestamp": _iso_now()}
        try:
            self.socketio.emit(event, body, to=user_room(str(user_id)))
        except Exception as e:
            LOG.error("failed to emit %s to user %s: %s", event, user_id, e)
            return False
        LOG.debug("emitted %s to user %s", event, user_id)
        return True

    def get_connection_stats(self) -> Dict[str, Any]:
        with self._lock:
            connected = len(self._connected)
        return {"connected": connected, "timestamp": _iso_now()}

    def shutdown(self):
        if self.socketio is None:
            return
        with self._lock:
            sids = list(self._connected)
            self._connected.clear()
        server = getattr(self.socketio, "server", None)
        if server is not None:
            for sid in sids:
                try:
                    server.disconnect(sid, namespace="/")
                except Exception as e:
                    LOG.warning("failed to disconnect %s: %s", sid, e)
        LOG.info("broadcaster shut down (%d client(s) disconnected)", len(sids))
        self.socketio = None
