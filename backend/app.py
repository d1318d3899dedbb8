# app.py
from __future__ import annotations
import atexit
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS
from flask_talisman import Talisman

# --- Load env BEFORE importing config (so config sees env) ---
ENV_PATH = Path(__file__).with_name(".env")
load_dotenv(ENV_PATH)

# --- Local modules ---
from config import get_config, validate_required_secrets
from logging_config import configure_logging
from errors import ServiceUnavailableError, WorkerStartError, register_error_handlers
from helpers import _ok
from auth import init_auth, make_socket_authenticator, _origins
from services import EXTENSION_KEY, Services, build_services
from queue_routes import queue_bp, websocket_bp
from media_routes import media_bp

LOG = logging.getLogger("app")
REQ_LOG = logging.getLogger("request")


def _init_talisman(app: Flask):
    is_prod = (os.getenv("ENV") == "prod") and not app.config.get("DEBUG") and not app.config.get("TESTING")
    if is_prod:
        # Prod: strict CSP + HTTPS
        Talisman(
            app,
            force_https=True,
            content_security_policy={
                "default-src": ["'self'"],
                "base-uri": ["'self'"],
                "connect-src": ["'self'", "https:", "wss:"],
                "frame-ancestors": ["'none'"],
            },
            session_cookie_secure=True,
            session_cookie_samesite="Lax",
            frame_options="DENY",
            referrer_policy="strict-origin-when-cross-origin",
        )
    else:
        # Dev: do not force HTTPS, allow localhost connects
        Talisman(
            app,
            force_https=False,
            content_security_policy={
                "default-src": ["'self'"],
                "connect-src": ["'self'", "http://localhost:8000", "ws://localhost:8000"],
                "frame-ancestors": ["'none'"],
            },
            session_cookie_secure=False,
            session_cookie_samesite="Lax",
            frame_options="DENY",
            referrer_policy="strict-origin-when-cross-origin",
        )


def _register_request_logging(app: Flask):
    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _log_request(resp):
        started = g.get("request_started")
        duration_ms = (time.perf_counter() - started) * 1000 if started else 0.0
        REQ_LOG.info("[%s] %s %s %.1fms ip=%s rid=%s", request.method, request.full_path.rstrip("?"),
                     resp.status_code, duration_ms, request.remote_addr, g.get("request_id"))
        if duration_ms > 1000:
            REQ_LOG.warning("slow request: %s %s took %.0fms", request.method, request.path, duration_ms)
        resp.headers["X-Request-ID"] = g.get("request_id", "")
        return resp


def create_app(config_object=None, services: Optional[Services] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or get_config())
    validate_required_secrets()  # raises only when ENV=prod and secrets missing
    configure_logging(app.config.get("LOG_LEVEL"))

    app.url_map.strict_slashes = False  # avoid /login -> /login/ redirects

    # JWT + Limiter
    init_auth(app)

    CORS(
        app,
        resources={r"/api/*": {"origins": _origins(app.config.get("CORS_ORIGINS"))}},
        supports_credentials=False,
        allow_headers=["Authorization", "Content-Type"],
        methods=["GET", "POST", "DELETE", "OPTIONS", "PUT", "PATCH"],
    )
    _init_talisman(app)
    register_error_handlers(app)
    _register_request_logging(app)

    svc = services or build_services(app.config, with_worker=bool(app.config.get("RUN_WORKER_IN_PROCESS")))
    app.extensions[EXTENSION_KEY] = svc
    svc.broadcaster.initialize(app, authenticate=make_socket_authenticator(svc.users))

    app.register_blueprint(queue_bp, url_prefix="/api/v1/queue")
    app.register_blueprint(websocket_bp, url_prefix="/api/v1/websocket")
    app.register_blueprint(media_bp, url_prefix="/api/v1/media-analysis")

    @app.get("/api/v1/healthcheck")
    def healthcheck():
        if not svc.queue.ping():
            raise ServiceUnavailableError("Queue store is unavailable")
        return _ok("OK", "Health check passed")

    if svc.worker is not None and app.config.get("RUN_WORKER_IN_PROCESS"):
        try:
            svc.worker.start()
            atexit.register(svc.worker.shutdown, app.config.get("WORKER_SHUTDOWN_GRACE_S", 30))
        except WorkerStartError as e:
            # API keeps serving; analysis triggers answer 503 until a worker is up
            LOG.error("media analysis worker not started: %s", e)

    LOG.info("app created (env=%s, in-process worker=%s)", os.getenv("ENV", "dev"),
             bool(svc.worker and svc.worker.is_running()))
    return app


if __name__ == "__main__":
    app = create_app()
    socketio = app.extensions[EXTENSION_KEY].broadcaster.socketio
    socketio.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        debug=app.config.get("DEBUG", False),
        use_reloader=False,
        allow_unsafe_werkzeug=True,
    )
