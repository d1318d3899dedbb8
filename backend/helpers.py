# helpers.py
from typing import Any, Optional
from datetime import datetime, timezone
import time

from flask import jsonify

def _now_ms() -> int:
    return int(time.time() * 1000)

def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _int_arg(value: Any, default: int, minimum: int = 0, maximum: Optional[int] = None) -> int:
    """Lenient int parsing for query/body params; falls back to default."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    n = max(minimum, n)
    if maximum is not None:
        n = min(maximum, n)
    return n

def _ok(data: Any = None, message: str = "Success", status: int = 200):
    """Uniform success envelope: {statusCode, data, message, success}."""
    return jsonify({"statusCode": status, "data": data, "message": message, "success": status < 400}), status
