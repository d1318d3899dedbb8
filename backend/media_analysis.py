# media_analysis.py
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from errors import (
    ApiError, DuplicateJobError, NotFoundError, PreconditionError, ServiceUnavailableError,
)
from media_pipeline import determine_media_source
from stores import to_public

LOG = logging.getLogger("media_analysis")

JOB_TYPE = "media-analysis"


class MediaAnalysisService:
    """Validates a trigger request and turns it into at most one queued job per interview."""

    def __init__(self, queue, worker, interviews, reports):
        self.queue = queue
        self.worker = worker
        self.interviews = interviews
        self.reports = reports

    def queue_analysis(self, interview_id: Optional[str], options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return self._queue_analysis(interview_id, options)
        except ApiError as e:
            LOG.error("Error queueing media analysis for interview %s: %s", interview_id, e.message)
            raise

    def worker_available(self) -> bool:
        """In-process pool if there is one, otherwise any pool registered in the queue store."""
        if self.worker is not None:
            return self.worker.is_running()
        return bool(self.queue.live_workers())

    def _queue_analysis(self, interview_id, options):
        if not self.worker_available():
            raise ServiceUnavailableError(
                "Media analysis service is unavailable. Please try again later or contact support."
            )
        if not interview_id:
            raise PreconditionError("Missing required parameter: interviewId")

        interview = self.interviews.find_by_id(interview_id)
        if not interview:
            raise NotFoundError("Interview not found")
        if not interview.get("isCompleted"):
            raise PreconditionError("Interview must be completed before media analysis")
        try:
            determine_media_source(interview)
        except PreconditionError:
            raise PreconditionError(
                "No video or audio recording found for this interview. "
                "Media analysis requires either a video or audio recording."
            ) from None

        report = self.reports.find_by_interview_id(interview_id)
        if not report:
            raise PreconditionError("Interview report must be generated before media analysis")

        existing = report.get("mediaAnalysis") or {}
        if existing.get("isCompleted"):
            LOG.info("Media analysis already exists for interview: %s", interview_id)
            return {
                "status": "already_exists",
                "message": "Media analysis already completed for this interview",
                "analysis": to_public(existing),
            }

        try:
            job = self.queue.enqueue(
                JOB_TYPE,
                {"interviewId": str(interview_id), "userId": str(interview.get("userId"))},
                options,
            )
        except DuplicateJobError as e:
            LOG.info("Media analysis already queued for interview %s (job %s)", interview_id, e.job_id)
            return {
                "status": "already_queued",
                "jobId": e.job_id,
                "message": "Media analysis is already queued for this interview",
            }

        LOG.info("Media analysis job queued successfully for interview: %s, job ID: %s", interview_id, job.id)
        return {
            "status": "queued",
            "jobId": job.id,
            "message": "Media analysis job queued successfully",
            "estimatedTime": "5-10 minutes",
        }

    def get_status(self, interview_id: str) -> Dict[str, Any]:
        report = self.reports.find_by_interview_id(interview_id)
        if not report:
            raise NotFoundError("Interview report not found")

        media = report.get("mediaAnalysis") or {}
        if media.get("error"):
            status, message = "failed", f"Media analysis failed: {media['error']}"
        elif media.get("analysis"):
            status, message = "completed", "Media analysis completed successfully"
        else:
            status, message = "not_started", "Media analysis has not been started"

        job = self.queue.get_inflight_job(str(interview_id))
        if job is not None and status != "completed":
            status = "processing" if job.state == "active" else "queued"
            message = f"Media analysis is {status}"

        return {
            "interviewId": interview_id,
            "status": status,
            "message": message,
            "mediaType": media.get("type"),
            "mediaAnalysis": to_public(media) if media else None,
            "analyzedAt": media.get("analyzedAt"),
            "fileSizeBytes": media.get("fileSizeBytes"),
            "processingDurationMs": media.get("processingDurationMs"),
            "job": {"id": job.id, "state": job.state, "progress": job.progress} if job else None,
        }

    def get_result(self, interview_id: str) -> Dict[str, Any]:
        report = self.reports.find_by_interview_id(interview_id)
        if not report:
            raise NotFoundError("Interview report not found")
        media = report.get("mediaAnalysis") or {}
        if not media.get("analysis"):
            raise NotFoundError("Media analysis not found or not completed")
        return {
            "interviewId": interview_id,
            "mediaType": media.get("type"),
            "analysis": media["analysis"],
            "analyzedAt": media.get("analyzedAt"),
            "fileSizeBytes": media.get("fileSizeBytes"),
            "processingDurationMs": media.get("processingDurationMs"),
            "externalFileRef": media.get("externalFileRef"),
        }
