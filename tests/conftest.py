"""Test configuration for importing the backend modules."""

from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "backend"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from unittest.mock import MagicMock  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402

from job_queue import JobOptions, JobQueue  # noqa: E402

INTERVIEW_ID = "64b7f0c2a1b2c3d4e5f60718"
USER_ID = "64b7f0c2a1b2c3d4e5f60001"
REPORT_ID = "64b7f0c2a1b2c3d4e5f69999"


class FakeInterviews:
    def __init__(self, docs=None):
        self.docs = {d["_id"]: d for d in (docs or [])}

    def find_by_id(self, interview_id):
        return self.docs.get(str(interview_id))


class FakeReports:
    def __init__(self, docs=None):
        self.docs = {d["interviewId"]: d for d in (docs or [])}
        self.updates = []

    def find_by_interview_id(self, interview_id):
        return self.docs.get(str(interview_id))

    def update_analysis(self, report_id, media_type, payload):
        self.updates.append((report_id, media_type, payload))
        for doc in self.docs.values():
            if doc["_id"] == report_id:
                if not payload.get("isCompleted") and (doc.get("mediaAnalysis") or {}).get("isCompleted"):
                    return False
                doc["mediaAnalysis"] = {"type": media_type, **payload}
                return True
        return False


class FakeUsers:
    def __init__(self, docs=None):
        self.docs = {d["_id"]: d for d in (docs or [])}

    def find_by_identity(self, identity):
        return self.docs.get(str(identity))


def _scored(extra_key):
    return {"score": 7, "feedback": "Solid", extra_key: ["example"]}


def sample_analysis(kind: str = "audio") -> dict:
    doc = {
        "type": kind,
        "communicationSkills": {
            "clarity": _scored("examples"),
            "articulation": _scored("examples"),
            "pace": _scored("examples"),
            "confidence": _scored("indicators"),
        },
        "audioQuality": {
            "clarity": _scored("issues"),
            "volume": _scored("notes"),
            "background": _scored("distractions"),
        },
        "overallPerformance": {
            "professionalism": _scored("examples"),
            "engagement": _scored("indicators"),
            "readiness": {"score": 6, "feedback": "Nearly there", "assessment": "ready with practice"},
        },
        "recommendations": {
            "immediate": [{"area": "pace", "suggestion": "slow down", "priority": "high"}],
            "practice": [{"skill": "storytelling", "exercise": "STAR drills", "frequency": "daily"}],
            "resources": [{"type": "article", "description": "STAR method", "link": "https://example.com"}],
        },
        "summary": {
            "strengths": ["structure"],
            "weaknesses": ["filler words"],
            "keyInsights": ["good technical depth"],
            "overallScore": 7.5,
        },
    }
    if kind == "video":
        doc["bodyLanguage"] = {
            "posture": _scored("observations"),
            "eyeContact": _scored("observations"),
            "gestures": _scored("observations"),
            "presence": _scored("observations"),
        }
    return doc


def make_interview(recordings=None, completed=True, interview_id=INTERVIEW_ID):
    return {
        "_id": interview_id,
        "userId": USER_ID,
        "isCompleted": completed,
        "recordings": recordings if recordings is not None else {
            "voice": {"combined": "https://cdn.example.com/rec/combined.mp3", "user": None},
            "video": None,
        },
    }


def make_report(media_analysis=None, interview_id=INTERVIEW_ID, report_id=REPORT_ID):
    doc = {"_id": report_id, "interviewId": interview_id, "strengths": [], "areasOfImprovement": []}
    if media_analysis is not None:
        doc["mediaAnalysis"] = media_analysis
    return doc


@pytest.fixture
def analysis_json():
    def _make(kind="audio"):
        return json.dumps(sample_analysis(kind))
    return _make


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def queue(redis_client):
    return JobQueue(
        redis_client,
        name="media-analysis",
        prefix="test",
        default_options=JobOptions(delay=0, backoff={"type": "exponential", "delay": 5000}),
    )


@pytest.fixture
def interviews():
    return FakeInterviews([make_interview()])


@pytest.fixture
def reports():
    return FakeReports([make_report()])


@pytest.fixture
def users():
    return FakeUsers([{"_id": USER_ID, "email": "candidate@example.com"}])


@pytest.fixture
def broadcaster():
    b = MagicMock()
    b.emit.return_value = True
    b.get_connection_stats.return_value = {"connected": 0, "timestamp": "2026-01-01T00:00:00+00:00"}
    return b
