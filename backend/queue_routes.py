# queue_routes.py
from __future__ import annotations
import logging

from flask import Blueprint, request
from flask_jwt_extended import jwt_required

from errors import QueueUnavailableError
from helpers import _iso_now, _int_arg, _ok
from services import services

LOG = logging.getLogger("app")

queue_bp = Blueprint("queue", __name__)
websocket_bp = Blueprint("websocket", __name__)

DEFAULT_CLEAN_AGE_MS = 24 * 60 * 60 * 1000


def _worker_health(svc):
    if svc.worker is not None:
        return svc.worker.health()
    live = svc.queue.live_workers()
    return {"isRunning": bool(live), "inProcess": False, "liveWorkers": len(live)}


# Public health check endpoint (no auth required for monitoring)
@queue_bp.get("/health")
def queue_health():
    svc = services()
    try:
        stats = svc.queue.get_stats()
        worker = _worker_health(svc)
    except QueueUnavailableError as e:
        LOG.error("queue health check failed: %s", e)
        return _ok({"queue": svc.queue.name, "status": "unhealthy", "error": e.message,
                    "timestamp": _iso_now()}, "Queue is unavailable", 503)
    paused = stats.pop("paused")
    return _ok({
        "queue": svc.queue.name,
        "status": "healthy",
        "metrics": stats,
        "isPaused": paused,
        "worker": worker,
        "timestamp": _iso_now(),
    }, "Queue health retrieved successfully")


@queue_bp.get("/stats")
@jwt_required()
def queue_stats():
    svc = services()
    stats = svc.queue.get_stats()
    paused = stats.pop("paused")
    return _ok({
        "queue": svc.queue.name,
        "counts": stats,
        "isPaused": paused,
        "timestamp": _iso_now(),
    }, "Queue statistics retrieved successfully")


@queue_bp.get("/failed")
@jwt_required()
def failed_jobs():
    limit = _int_arg(request.args.get("limit"), 10, minimum=1, maximum=100)
    offset = _int_arg(request.args.get("offset"), 0)
    svc = services()
    jobs = svc.queue.list_failed(offset=offset, limit=limit)
    total = svc.queue.get_stats()["failed"]
    return _ok({
        "jobs": [j.to_dict() for j in jobs],
        "total": total,
        "limit": limit,
        "offset": offset,
    }, "Failed jobs retrieved successfully")


@queue_bp.post("/retry/<job_id>")
@jwt_required()
def retry_job(job_id: str):
    services().queue.retry(job_id)
    LOG.info("job %s retried via admin api", job_id)
    return _ok({"jobId": job_id, "status": "retried"}, "Job retried successfully")


@queue_bp.post("/clean")
@jwt_required()
def clean_queue():
    body = request.get_json(silent=True) or {}
    older_than = _int_arg(body.get("olderThan"), DEFAULT_CLEAN_AGE_MS)
    limit = _int_arg(body.get("limit"), 100, minimum=1)
    queue = services().queue
    cleaned = {state: len(queue.clean(older_than, limit, state)) for state in ("completed", "failed", "paused")}
    LOG.info("Cleaned queue: %d completed, %d failed jobs", cleaned["completed"], cleaned["failed"])
    return _ok({"cleaned": cleaned, "olderThan": older_than, "limit": limit}, "Queue cleaned successfully")


@queue_bp.post("/pause")
@jwt_required()
def pause_queue():
    services().queue.pause()
    return _ok({"status": "paused"}, "Queue paused successfully")


@queue_bp.post("/resume")
@jwt_required()
def resume_queue():
    services().queue.resume()
    return _ok({"status": "resumed"}, "Queue resumed successfully")


@websocket_bp.get("/stats")
@jwt_required()
def websocket_stats():
    return _ok(services().broadcaster.get_connection_stats(), "WebSocket statistics retrieved successfully")
