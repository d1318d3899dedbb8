# media_pipeline.py
"""Media analysis pipeline: fetch -> upload -> wait until processed -> analyze -> persist -> notify.

One pipeline serves both media kinds; the kind only picks the mime type, the
prompt and the response schema.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from analysis_client import FileHandle, ACTIVE, FAILED, PROCESSING
from errors import ExternalFileError, NotFoundError, PreconditionError, ProcessingError, is_retryable
from helpers import _utcnow
from media_fetch import fetch_media
from prompts import prompt_for
from schemas import MediaKind, parse_analysis, schema_for

LOG = logging.getLogger("pipeline")

EVENT_STARTED = "analysis:started"
EVENT_COMPLETED = "analysis:completed"
EVENT_FAILED = "analysis:failed"


@dataclass
class PipelineSettings:
    fetch_timeout: float = 300.0
    max_bytes: int = 500 * 1024 * 1024
    poll_interval: float = 5.0
    max_polls: int = 120
    job_deadline: float = 20 * 60.0

    @classmethod
    def from_config(cls, cfg) -> "PipelineSettings":
        return cls(
            fetch_timeout=float(cfg.get("MEDIA_FETCH_TIMEOUT_S", 300)),
            max_bytes=int(cfg.get("MEDIA_MAX_BYTES", 500 * 1024 * 1024)),
            poll_interval=float(cfg.get("FILE_POLL_INTERVAL_S", 5)),
            max_polls=int(cfg.get("FILE_MAX_POLLS", 120)),
            job_deadline=float(cfg.get("JOB_DEADLINE_SECONDS", 20 * 60)),
        )


@dataclass
class MediaSource:
    kind: MediaKind
    url: str

    @property
    def mime_type(self) -> str:
        return self.kind.mime_type


class _NoContext:
    job_id = None

    def update_progress(self, pct: int):
        pass

    def is_cancelled(self) -> bool:
        return False


def determine_media_source(interview: Dict[str, Any]) -> MediaSource:
    """Video wins over the combined voice track, which wins over the user's voice track."""
    recordings = interview.get("recordings") or {}
    video = recordings.get("video")
    if video:
        return MediaSource(MediaKind.VIDEO, video)
    voice = recordings.get("voice") or {}
    for track in ("combined", "user"):
        if voice.get(track):
            return MediaSource(MediaKind.AUDIO, voice[track])
    raise PreconditionError("No video or audio recording found for analysis")


class MediaAnalysisPipeline:
    def __init__(self, interviews, reports, analysis_client, broadcaster,
                 fetch: Callable = fetch_media, settings: Optional[PipelineSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.interviews = interviews
        self.reports = reports
        self.analysis_client = analysis_client
        self.broadcaster = broadcaster
        self.fetch = fetch
        self.settings = settings or PipelineSettings()
        self._sleep = sleep

    determine_media_source = staticmethod(determine_media_source)

    def __call__(self, data: Dict[str, Any], ctx=None) -> Dict[str, Any]:
        return self.run(data, ctx)

    def run(self, data: Dict[str, Any], ctx=None) -> Dict[str, Any]:
        ctx = ctx or _NoContext()
        interview_id = str(data.get("interviewId") or "")
        user_id = str(data.get("userId") or "")
        job_id = getattr(ctx, "job_id", None)
        started = time.monotonic()
        deadline = started + self.settings.job_deadline
        handle: Optional[FileHandle] = None
        report: Optional[Dict[str, Any]] = None
        kind: Optional[MediaKind] = None

        LOG.info("Starting media analysis for interview %s (job %s)", interview_id, job_id)
        self._notify(user_id, f"{EVENT_STARTED}:{interview_id}", {
            "interviewId": interview_id,
            "status": "processing",
            "message": "Media analysis has started",
        })

        try:
            ctx.update_progress(10)

            # 1. preconditions
            interview = self.interviews.find_by_id(interview_id)
            if not interview:
                raise NotFoundError(f"Interview not found: {interview_id}")
            if not interview.get("isCompleted"):
                raise PreconditionError(f"Interview {interview_id} is not completed")
            source = determine_media_source(interview)
            kind = source.kind
            report = self.reports.find_by_interview_id(interview_id)
            if not report:
                raise NotFoundError(f"Interview report not found for interview {interview_id}")
            existing = report.get("mediaAnalysis") or {}
            if existing.get("isCompleted") and existing.get("analysis"):
                LOG.info("interview %s already analyzed, skipping", interview_id)
                ctx.update_progress(100)
                return {"interviewId": interview_id, "type": existing.get("type"), "skipped": True}
            LOG.info("Detected media type %s for interview %s", kind.value, interview_id)
            ctx.update_progress(20)

            # 2. fetch
            self._check_deadline(deadline, ctx, interview_id, "fetch")
            media = self.fetch(
                source.url, kind.value,
                timeout=min(self.settings.fetch_timeout, max(1.0, deadline - time.monotonic())),
                max_bytes=self.settings.max_bytes,
            )
            ctx.update_progress(40)

            # 3. upload + wait until processed
            self._check_deadline(deadline, ctx, interview_id, "upload")
            handle = self.analysis_client.upload(media.content, source.mime_type, media.file_name)
            handle = self._wait_until_active(handle, deadline, ctx, interview_id)
            ctx.update_progress(60)

            # 4. analyze
            self._check_deadline(deadline, ctx, interview_id, "analysis")
            text = self.analysis_client.generate_structured(handle, prompt_for(kind), schema_for(kind))
            analysis = parse_analysis(kind, text)
            ctx.update_progress(80)

            # 5. persist
            duration_ms = int((time.monotonic() - started) * 1000)
            stored = self.reports.update_analysis(report["_id"], kind.value, {
                "analysis": analysis,
                "analyzedAt": _utcnow(),
                "isCompleted": True,
                "processingDurationMs": duration_ms,
                "fileSizeBytes": handle.size_bytes or media.size_bytes,
                "externalFileRef": handle.name,
                "jobId": job_id,
            })
            if not stored:
                raise NotFoundError(f"Interview report {report['_id']} no longer exists, analysis not stored")
            ctx.update_progress(95)
        except Exception as e:
            self._on_failure(e, interview_id, user_id, job_id, kind, report, handle, started)
            raise

        # 6. notify
        summary = analysis.get("summary") or {}
        LOG.info("%s analysis completed for interview %s in %dms", kind.value, interview_id, duration_ms)
        self._notify(user_id, f"{EVENT_COMPLETED}:{interview_id}", {
            "interviewId": interview_id,
            "status": "completed",
            "message": f"{kind.value} analysis completed successfully",
            "mediaType": kind.value,
            "analysis": {
                "summary": summary,
                "overallScore": summary.get("overallScore"),
                "processingDurationMs": duration_ms,
                "fileSizeBytes": handle.size_bytes or media.size_bytes,
            },
        })
        ctx.update_progress(100)
        return {
            "interviewId": interview_id,
            "type": kind.value,
            "overallScore": summary.get("overallScore"),
            "processingDurationMs": duration_ms,
            "externalFileRef": handle.name,
        }

    # -------- steps --------
    def _check_deadline(self, deadline: float, ctx, interview_id: str, step: str):
        if ctx.is_cancelled():
            raise ProcessingError(f"Media analysis for interview {interview_id} cancelled before {step}")
        if time.monotonic() > deadline:
            raise ProcessingError(
                f"Media analysis for interview {interview_id} exceeded {self.settings.job_deadline:.0f}s before {step}"
            )

    def _wait_until_active(self, handle: FileHandle, deadline: float, ctx, interview_id: str) -> FileHandle:
        polls = 0
        while handle.state == PROCESSING:
            if polls >= self.settings.max_polls:
                raise ExternalFileError(
                    f"File {handle.name} still processing after {polls} checks"
                )
            if ctx.is_cancelled():
                raise ExternalFileError(f"Cancelled while waiting for file {handle.name}")
            if time.monotonic() + self.settings.poll_interval > deadline:
                raise ExternalFileError(f"Deadline reached while waiting for file {handle.name}")
            LOG.debug("file %s still processing (interview %s, check %d)", handle.name, interview_id, polls + 1)
            self._sleep(self.settings.poll_interval)
            polls += 1
            handle = self.analysis_client.get_file_status(handle.name)

        if handle.state == FAILED:
            raise ExternalFileError(f"File processing failed: {handle.error or handle.name}")
        if handle.state != ACTIVE:
            raise ExternalFileError(f"File {handle.name} in unexpected state {handle.state}")
        if not handle.uri or not handle.mime_type:
            raise ExternalFileError(f"File {handle.name} is missing uri or mime type after processing")
        return handle

    # -------- failure path --------
    def _on_failure(self, err: Exception, interview_id: str, user_id: str, job_id: Optional[str],
                    kind: Optional[MediaKind], report: Optional[Dict[str, Any]],
                    handle: Optional[FileHandle], started: float):
        duration_ms = int((time.monotonic() - started) * 1000)
        retryable = is_retryable(err)
        LOG.error("Media analysis failed for interview %s (job %s, retryable=%s): %s",
                  interview_id, job_id, retryable, err)

        if handle is not None:
            try:
                self.analysis_client.delete_file(handle.name)
            except Exception as e:
                LOG.warning("Failed to cleanup file %s for interview %s: %s", handle.name, interview_id, e)

        self._notify(user_id, f"{EVENT_FAILED}:{interview_id}", {
            "interviewId": interview_id,
            "status": "failed",
            "message": "Media analysis failed",
            "error": str(err),
            "retryable": retryable,
            "processingDurationMs": duration_ms,
        })

        try:
            if report is None and interview_id:
                report = self.reports.find_by_interview_id(interview_id)
            if report is not None and (report.get("mediaAnalysis") or {}).get("isCompleted"):
                LOG.warning("interview %s already has a completed analysis, error not stored", interview_id)
            elif report is not None:
                self.reports.update_analysis(report["_id"], kind.value if kind else None, {
                    "error": str(err),
                    "failedAt": _utcnow(),
                    "isCompleted": False,
                    "processingDurationMs": duration_ms,
                    "jobId": job_id,
                })
        except Exception as e:
            LOG.error("Failed to store error for interview %s: %s", interview_id, e)

    def _notify(self, user_id: str, event: str, payload: Dict[str, Any]):
        if not user_id or self.broadcaster is None:
            return
        try:
            self.broadcaster.emit(user_id, event, payload)
        except Exception as e:
            LOG.warning("notification %s for user %s dropped: %s", event, user_id, e)
