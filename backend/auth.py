# auth.py
"""Bearer-token verification. Tokens are issued by the account service; this
backend only verifies them with the shared JWT_SECRET_KEY."""
from __future__ import annotations
import logging
import os
from typing import Any, Dict, Optional

from flask import current_app, jsonify
from flask_jwt_extended import JWTManager, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from jwt.exceptions import PyJWTError

from services import services

LOG = logging.getLogger("app")

jwt = JWTManager()

# rate limiter; will be bound to app in init_auth()
limiter = Limiter(key_func=get_remote_address, default_limits=["200/hour"])

# CORS origins
DEFAULT_ORIGINS = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:5173", "http://127.0.0.1:5173",
]


def _origins(configured=None):
    raw = configured if configured is not None else os.getenv("CORS_ORIGINS", "")
    if isinstance(raw, (list, tuple)):
        raw = ",".join(raw)
    # Allow quick dev override for everything
    if raw.strip() == "*":
        return "*"
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    try:
        if current_app and current_app.config.get("DEBUG"):
            return "*"
    except RuntimeError:
        # current_app may not be available at import time
        pass
    return DEFAULT_ORIGINS


def _unauthorized(message: str):
    return jsonify({"statusCode": 401, "message": message, "success": False}), 401


@jwt.unauthorized_loader
def _missing_token(reason: str):
    return _unauthorized("Unauthorized request")


@jwt.invalid_token_loader
def _invalid_token(reason: str):
    return _unauthorized(f"Invalid access token: {reason}")


@jwt.expired_token_loader
def _expired_token(jwt_header, jwt_payload):
    return _unauthorized("Access token expired")


@jwt.user_lookup_loader
def _load_user(jwt_header, jwt_payload):
    identity = jwt_payload.get(current_app.config.get("JWT_IDENTITY_CLAIM", "sub"))
    return services().users.find_by_identity(identity)


@jwt.user_lookup_error_loader
def _unknown_user(jwt_header, jwt_payload):
    return _unauthorized("Invalid access token: user not found")


def _token_from(auth: Optional[Dict[str, Any]], header: Optional[str]) -> Optional[str]:
    if isinstance(auth, dict) and auth.get("token"):
        token = str(auth["token"])
    elif header:
        token = header
    else:
        return None
    if token.lower().startswith("bearer "):
        token = token[7:]
    return token.strip() or None


def make_socket_authenticator(users):
    """Build the connect-time check for the broadcaster: token -> known user id."""

    def authenticate(auth: Optional[Dict[str, Any]], header: Optional[str]) -> Optional[str]:
        token = _token_from(auth, header)
        if not token:
            return None
        try:
            claims = decode_token(token)
        except (JWTExtendedException, PyJWTError) as e:
            LOG.info("socket token rejected: %s", e)
            return None
        identity = claims.get(current_app.config.get("JWT_IDENTITY_CLAIM", "sub"))
        user = users.find_by_identity(identity) if users is not None else None
        if not user:
            LOG.info("socket token for unknown user %s", identity)
            return None
        return str(user.get("_id") or identity)

    return authenticate


def init_auth(app):
    """Bind JWT verification and the rate limiter to the app."""
    app.config.setdefault("JWT_TOKEN_LOCATION", ["headers"])
    jwt.init_app(app)
    limiter.init_app(app)
