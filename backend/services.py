# services.py
"""Explicit wiring of the long-lived collaborators, shared by the API and the worker process."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional

from flask import current_app

from analysis_client import MediaAnalysisClient
from broadcaster import NotificationBroadcaster
from job_queue import JobOptions, JobQueue
from media_analysis import MediaAnalysisService
from media_pipeline import MediaAnalysisPipeline, PipelineSettings
from stores import InterviewStore, ReportStore, UserStore, get_db
from worker import WorkerPool

LOG = logging.getLogger("app")

EXTENSION_KEY = "mockverse"


@dataclass
class Services:
    queue: JobQueue
    broadcaster: NotificationBroadcaster
    interviews: Any
    reports: Any
    users: Any
    worker: Optional[WorkerPool] = None
    pipeline: Optional[MediaAnalysisPipeline] = None
    media_analysis: Optional[MediaAnalysisService] = None


def job_options_from(cfg) -> JobOptions:
    return JobOptions(
        attempts=int(cfg.get("JOB_ATTEMPTS", 3)),
        backoff={"type": "exponential", "delay": int(cfg.get("JOB_BACKOFF_MS", 5000))},
        delay=int(cfg.get("JOB_DELAY_MS", 1000)),
        remove_on_complete=int(cfg.get("JOB_REMOVE_ON_COMPLETE", 10)),
        remove_on_fail=int(cfg.get("JOB_REMOVE_ON_FAIL", 50)),
    )


def build_worker(cfg, queue: JobQueue, pipeline) -> WorkerPool:
    return WorkerPool(
        queue,
        pipeline,
        concurrency=int(cfg.get("MEDIA_WORKER_CONCURRENCY", 2)),
        stalled_interval=int(cfg.get("QUEUE_STALLED_INTERVAL_MS", 30000)) / 1000.0,
        max_stalled_count=int(cfg.get("QUEUE_MAX_STALLED_COUNT", 1)),
        poll_interval=int(cfg.get("QUEUE_POLL_INTERVAL_MS", 1000)) / 1000.0,
    )


def build_services(cfg, with_worker: bool = False, db=None, redis_client=None,
                   analysis_client=None, broadcaster: Optional[NotificationBroadcaster] = None) -> Services:
    """cfg is any mapping with the config keys (app.config or a dict)."""
    db = db if db is not None else get_db(cfg.get("MONGO_URI"), cfg.get("MONGO_DB"))
    name = cfg.get("MEDIA_ANALYSIS_QUEUE", "media-analysis")
    prefix = cfg.get("QUEUE_PREFIX", "mq")
    if redis_client is not None:
        queue = JobQueue(redis_client, name=name, prefix=prefix, default_options=job_options_from(cfg))
    else:
        queue = JobQueue.from_url(cfg.get("REDIS_URL"), name=name, prefix=prefix,
                                  default_options=job_options_from(cfg))

    svc = Services(
        queue=queue,
        broadcaster=broadcaster or NotificationBroadcaster(
            message_queue=cfg.get("SOCKETIO_MESSAGE_QUEUE"), cors_origins=cfg.get("CORS_ORIGINS") or "*",
        ),
        interviews=InterviewStore(db),
        reports=ReportStore(db),
        users=UserStore(db),
    )

    if with_worker:
        client = analysis_client or MediaAnalysisClient(
            api_key=cfg.get("GOOGLE_GENERATIVE_AI_API_KEY", ""),
            model=cfg.get("MEDIA_ANALYSIS_MODEL", "gemini-2.0-flash-lite"),
        )
        svc.pipeline = MediaAnalysisPipeline(
            svc.interviews, svc.reports, client, svc.broadcaster,
            settings=PipelineSettings.from_config(cfg),
        )
        svc.worker = build_worker(cfg, queue, svc.pipeline)

    svc.media_analysis = MediaAnalysisService(queue, svc.worker, svc.interviews, svc.reports)
    return svc


def services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
