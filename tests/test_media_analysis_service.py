from unittest.mock import MagicMock

import pytest

from analysis_client import FileHandle
from conftest import INTERVIEW_ID, FakeInterviews, FakeReports, make_interview, make_report
from errors import NotFoundError, PreconditionError, ServiceUnavailableError
from job_queue import ACTIVE, COMPLETED
from media_analysis import MediaAnalysisService
from media_fetch import FetchedMedia
from media_pipeline import MediaAnalysisPipeline, PipelineSettings
from worker import WorkerPool


@pytest.fixture
def running_worker():
    w = MagicMock()
    w.is_running.return_value = True
    return w


def _service(queue, worker, interviews, reports):
    return MediaAnalysisService(queue, worker, interviews, reports)


def _job_count(queue):
    stats = queue.get_stats()
    return stats["waiting"] + stats["delayed"] + stats["active"]


def test_queue_analysis_enqueues_one_job(queue, running_worker, interviews, reports):
    svc = _service(queue, running_worker, interviews, reports)

    out = svc.queue_analysis(INTERVIEW_ID)

    assert out["status"] == "queued"
    assert out["estimatedTime"] == "5-10 minutes"
    assert out["jobId"].startswith(f"media-analysis-{INTERVIEW_ID}-")
    job = queue.get_job(out["jobId"])
    assert job.data["userId"] == "64b7f0c2a1b2c3d4e5f60001"


def test_second_trigger_reports_existing_job(queue, running_worker, interviews, reports):
    svc = _service(queue, running_worker, interviews, reports)
    first = svc.queue_analysis(INTERVIEW_ID)

    second = svc.queue_analysis(INTERVIEW_ID)

    assert second["status"] == "already_queued"
    assert second["jobId"] == first["jobId"]
    assert _job_count(queue) == 1


def test_completed_analysis_is_not_requeued(queue, running_worker, interviews):
    reports = FakeReports([make_report({"type": "audio", "isCompleted": True, "analysis": {"summary": {}}})])
    svc = _service(queue, running_worker, interviews, reports)

    out = svc.queue_analysis(INTERVIEW_ID)

    assert out["status"] == "already_exists"
    assert out["analysis"]["type"] == "audio"
    assert _job_count(queue) == 0


def test_repeated_triggers_on_completed_analysis_change_nothing(queue, running_worker, interviews):
    analysis = {"type": "audio", "isCompleted": True, "analysis": {"summary": {"overallScore": 8}}}
    reports = FakeReports([make_report(dict(analysis))])
    svc = _service(queue, running_worker, interviews, reports)

    first = svc.queue_analysis(INTERVIEW_ID)
    second = svc.queue_analysis(INTERVIEW_ID)

    assert first == second
    assert second["status"] == "already_exists"
    assert _job_count(queue) == 0
    assert reports.updates == []
    assert reports.docs[INTERVIEW_ID]["mediaAnalysis"] == analysis


def test_unavailable_without_worker(queue, interviews, reports):
    stopped = MagicMock()
    stopped.is_running.return_value = False
    svc = _service(queue, stopped, interviews, reports)

    with pytest.raises(ServiceUnavailableError) as exc:
        svc.queue_analysis(INTERVIEW_ID)
    assert exc.value.status_code == 503
    assert _job_count(queue) == 0


def test_remote_worker_counts_as_available(queue, interviews, reports):
    svc = _service(queue, None, interviews, reports)
    assert svc.worker_available() is False

    queue.register_worker("pool-1", 60000, {"concurrency": 2})
    assert svc.worker_available() is True
    assert svc.queue_analysis(INTERVIEW_ID)["status"] == "queued"


def test_missing_interview_id(queue, running_worker, interviews, reports):
    with pytest.raises(PreconditionError, match="interviewId"):
        _service(queue, running_worker, interviews, reports).queue_analysis("")


def test_unknown_interview(queue, running_worker, reports):
    svc = _service(queue, running_worker, FakeInterviews([]), reports)
    with pytest.raises(NotFoundError, match="Interview not found"):
        svc.queue_analysis(INTERVIEW_ID)


def test_incomplete_interview_is_rejected(queue, running_worker, reports):
    # scenario: the interview is still running
    svc = _service(queue, running_worker, FakeInterviews([make_interview(completed=False)]), reports)

    with pytest.raises(PreconditionError) as exc:
        svc.queue_analysis(INTERVIEW_ID)
    assert exc.value.status_code == 400
    assert "must be completed" in exc.value.message
    assert _job_count(queue) == 0


def test_interview_without_recordings_is_rejected(queue, running_worker, reports):
    svc = _service(queue, running_worker, FakeInterviews([make_interview({})]), reports)

    with pytest.raises(PreconditionError, match="No video or audio recording found"):
        svc.queue_analysis(INTERVIEW_ID)
    assert _job_count(queue) == 0


def test_report_required_before_trigger(queue, running_worker, interviews):
    svc = _service(queue, running_worker, interviews, FakeReports([]))
    with pytest.raises(PreconditionError, match="report must be generated"):
        svc.queue_analysis(INTERVIEW_ID)


def test_status_not_started(queue, running_worker, interviews, reports):
    status = _service(queue, running_worker, interviews, reports).get_status(INTERVIEW_ID)
    assert status["status"] == "not_started"
    assert status["mediaAnalysis"] is None
    assert status["job"] is None


def test_status_reflects_inflight_job(queue, running_worker, interviews, reports):
    svc = _service(queue, running_worker, interviews, reports)
    svc.queue_analysis(INTERVIEW_ID)
    assert svc.get_status(INTERVIEW_ID)["status"] == "queued"

    job = queue.fetch_next("tok", 30000)
    assert job.state == ACTIVE
    status = svc.get_status(INTERVIEW_ID)
    assert status["status"] == "processing"
    assert status["job"]["id"] == job.id


def test_status_failed_shows_error(queue, running_worker, interviews):
    reports = FakeReports([make_report({"type": "video", "isCompleted": False, "error": "upload failed"})])
    status = _service(queue, running_worker, interviews, reports).get_status(INTERVIEW_ID)
    assert status["status"] == "failed"
    assert status["message"] == "Media analysis failed: upload failed"
    assert status["mediaType"] == "video"


def test_status_and_result_need_a_report(queue, running_worker, interviews):
    svc = _service(queue, running_worker, interviews, FakeReports([]))
    with pytest.raises(NotFoundError):
        svc.get_status(INTERVIEW_ID)
    with pytest.raises(NotFoundError):
        svc.get_result(INTERVIEW_ID)


def test_result_missing_until_completed(queue, running_worker, interviews, reports):
    with pytest.raises(NotFoundError, match="not found or not completed"):
        _service(queue, running_worker, interviews, reports).get_result(INTERVIEW_ID)


def test_video_interview_end_to_end(queue, broadcaster, analysis_json):
    interviews = FakeInterviews([make_interview({"video": "https://cdn.example.com/rec/interview.mp4"})])
    reports = FakeReports([make_report()])
    client = MagicMock()
    client.upload.return_value = FileHandle(name="files/v1", state="ACTIVE", uri="https://files/v1",
                                            mime_type="video/mp4", size_bytes=4096)
    client.generate_structured.return_value = analysis_json("video")
    fetch = MagicMock(return_value=FetchedMedia(b"\x00" * 4096, "interview.mp4", "video/mp4"))
    pipeline = MediaAnalysisPipeline(interviews, reports, client, broadcaster, fetch=fetch,
                                     settings=PipelineSettings(poll_interval=0.0), sleep=lambda s: None)
    pool = WorkerPool(queue, pipeline)
    svc = MediaAnalysisService(queue, None, interviews, reports)
    queue.register_worker(pool.worker_id, 60000, {})

    queued = svc.queue_analysis(INTERVIEW_ID)
    assert svc.get_status(INTERVIEW_ID)["status"] == "queued"

    assert pool.run_once() is True

    assert queue.get_job(queued["jobId"]).state == COMPLETED
    status = svc.get_status(INTERVIEW_ID)
    assert status["status"] == "completed"
    assert status["mediaType"] == "video"
    result = svc.get_result(INTERVIEW_ID)
    assert result["analysis"]["bodyLanguage"]["posture"]["score"] == 7
    assert result["externalFileRef"] == "files/v1"
    assert svc.queue_analysis(INTERVIEW_ID)["status"] == "already_exists"
