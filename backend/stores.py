# stores.py
from __future__ import annotations
import logging
import os
from typing import Optional, Dict, Any

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

from helpers import _utcnow

LOG = logging.getLogger("stores")

# -------- Mongo connection --------
_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def get_db(uri: Optional[str] = None, name: Optional[str] = None) -> Database:
    global _client, _db
    if _db is not None:
        return _db
    uri = uri or os.getenv("MONGO_URI", "mongodb://localhost:27017")
    name = name or os.getenv("MONGO_DB", "mockverse")
    _client = MongoClient(uri, serverSelectionTimeoutMS=5000)
    _db = _client[name]
    # Ensure indexes once
    _db.interviewreports.create_index([("interviewId", ASCENDING)], name="reports_interview")
    _db.interviews.create_index([("userId", ASCENDING)], name="interviews_user")
    LOG.info("connected to mongo database %s", name)
    return _db


def close_db():
    global _client, _db
    if _client is not None:
        _client.close()
    _client, _db = None, None


def _oid(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stringify ObjectIds so the document can go through jsonify."""
    if doc is None:
        return None
    out = {}
    for k, v in doc.items():
        if isinstance(v, ObjectId):
            v = str(v)
        elif isinstance(v, dict):
            v = to_public(v)
        out["id" if k == "_id" else k] = v
    return out


# -------- Interviews --------
class InterviewStore:
    def __init__(self, db: Database):
        self.col = db.interviews

    def find_by_id(self, interview_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(interview_id)
        if oid is None:
            return None
        return self.col.find_one({"_id": oid, "isDeleted": {"$ne": True}})


# -------- Reports --------
class ReportStore:
    def __init__(self, db: Database):
        self.col = db.interviewreports

    def find_by_interview_id(self, interview_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(interview_id)
        if oid is None:
            return None
        return self.col.find_one({"interviewId": oid})

    def update_analysis(self, report_id: Any, media_type: str, payload: Dict[str, Any]) -> bool:
        """Replace mediaAnalysis in one $set; success and error variants never mix.

        An error variant never replaces a completed analysis.
        """
        oid = _oid(report_id)
        if oid is None:
            raise ValueError(f"invalid report id: {report_id!r}")
        query = {"_id": oid}
        if not payload.get("isCompleted"):
            query["mediaAnalysis.isCompleted"] = {"$ne": True}
        doc = {"type": media_type, **payload}
        res = self.col.update_one(query, {"$set": {"mediaAnalysis": doc, "updatedAt": _utcnow()}})
        return res.matched_count == 1


# -------- Users --------
class UserStore:
    def __init__(self, db: Database):
        self.col = db.users

    def find_by_identity(self, identity: Any) -> Optional[Dict[str, Any]]:
        """Token identity is either the user id or the (lower-cased) email."""
        if not identity:
            return None
        projection = {"password": 0, "refreshToken": 0}
        oid = _oid(identity)
        if oid is not None:
            user = self.col.find_one({"_id": oid}, projection)
            if user:
                return user
        return self.col.find_one({"email": str(identity).lower().strip()}, projection)
