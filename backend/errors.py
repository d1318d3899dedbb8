# errors.py
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from flask import jsonify
from werkzeug.exceptions import HTTPException

LOG = logging.getLogger("errors")


class ApiError(Exception):
    """Error that is allowed to cross the HTTP boundary as {statusCode, message}."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"statusCode": self.status_code, "message": self.message, "success": False}


# -------- Precondition errors (terminal, never retried) --------
class PreconditionError(ApiError):
    status_code = 400
    retryable = False


class NotFoundError(PreconditionError):
    status_code = 404


class ServiceUnavailableError(ApiError):
    status_code = 503


# -------- Queue errors --------
class QueueUnavailableError(ServiceUnavailableError):
    """Backing store unreachable; callers should retry later."""

    retryable = True


class JobNotFoundError(ApiError):
    status_code = 404


class InvalidJobStateError(ApiError):
    status_code = 400


class DuplicateJobError(ApiError):
    status_code = 409

    def __init__(self, job_id: str, message: str = "an unfinished job already exists for this interview"):
        super().__init__(message)
        self.job_id = job_id


class WorkerStartError(RuntimeError):
    pass


# -------- Processing errors (consume a job attempt) --------
class ProcessingError(ApiError):
    status_code = 500
    retryable = True


class MediaFetchError(ProcessingError):
    pass


class ExternalFileError(ProcessingError):
    pass


class AnalysisParseError(ProcessingError):
    """Model output that does not parse or validate. Still consumes an attempt."""


def is_retryable(exc: BaseException) -> bool:
    """Precondition failures are permanent; everything else goes through backoff."""
    return not isinstance(exc, PreconditionError)


# -------- Flask wiring --------
def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def _api_error(err: ApiError):
        if err.status_code >= 500:
            LOG.error("api error %s: %s", err.status_code, err.message)
        body = err.to_dict()
        if isinstance(err, DuplicateJobError):
            body["jobId"] = err.job_id
        return jsonify(body), err.status_code

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException):
        code = err.code or 500
        return jsonify({"statusCode": code, "message": err.description or err.name, "success": False}), code

    @app.errorhandler(Exception)
    def _unhandled(err: Exception):
        LOG.exception("unhandled error: %s", err)
        message = str(err) if app.config.get("DEBUG") else "Internal Server Error"
        return jsonify({"statusCode": 500, "message": message, "success": False}), 500
