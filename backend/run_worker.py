# run_worker.py
"""Standalone media-analysis worker: python run_worker.py"""
from __future__ import annotations
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

# --- Load env BEFORE importing config (so config sees env) ---
load_dotenv(Path(__file__).with_name(".env"))

from config import get_config, validate_required_secrets
from errors import QueueUnavailableError, WorkerStartError
from logging_config import configure_logging
from services import build_services
from stores import close_db

LOG = logging.getLogger("worker")


def _config_dict(cfg_cls) -> dict:
    return {k: getattr(cfg_cls, k) for k in dir(cfg_cls) if k.isupper()}


def main() -> int:
    cfg = _config_dict(get_config())
    validate_required_secrets()
    configure_logging(cfg.get("LOG_LEVEL"))

    svc = build_services(cfg, with_worker=True)
    svc.broadcaster.initialize_emitter()

    try:
        stats = svc.queue.get_stats()
    except QueueUnavailableError as e:
        LOG.error("cannot start worker: %s", e.message)
        return 1
    LOG.info("queue %s on startup: %d waiting, %d active, %d delayed, %d failed%s",
             svc.queue.name, stats["waiting"], stats["active"], stats["delayed"], stats["failed"],
             " (paused)" if stats["paused"] else "")
    if stats["active"]:
        LOG.info("%d job(s) left active by a previous run will be recovered by stalled detection", stats["active"])

    try:
        svc.worker.start()
    except WorkerStartError as e:
        LOG.error("%s", e)
        return 1

    stop = threading.Event()

    def _graceful(signum, frame):
        LOG.info("Received %s. Starting graceful shutdown...", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _graceful)
    signal.signal(signal.SIGINT, _graceful)

    while not stop.wait(1.0):
        pass

    svc.worker.shutdown(cfg.get("WORKER_SHUTDOWN_GRACE_S", 30))
    svc.broadcaster.shutdown()
    svc.queue.close()
    close_db()
    LOG.info("worker shutdown completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
