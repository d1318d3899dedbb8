# media_routes.py
from __future__ import annotations

from flask import Blueprint
from flask_jwt_extended import jwt_required

from helpers import _ok
from services import services

media_bp = Blueprint("media_analysis", __name__)


@media_bp.post("/<interview_id>/analyze")
@jwt_required()
def analyze_media(interview_id: str):
    result = services().media_analysis.queue_analysis(interview_id)
    code = 201 if result["status"] == "queued" else 200
    return _ok(result, result["message"], code)


@media_bp.get("/<interview_id>/status")
@jwt_required()
def media_analysis_status(interview_id: str):
    data = services().media_analysis.get_status(interview_id)
    return _ok(data, "Media analysis status retrieved successfully")


@media_bp.get("/<interview_id>/result")
@jwt_required()
def media_analysis_result(interview_id: str):
    data = services().media_analysis.get_result(interview_id)
    return _ok(data, "Media analysis result retrieved successfully")
