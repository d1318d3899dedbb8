# schemas.py
"""Structured analysis schemas, one per media kind.

The pydantic classes are passed to the model as the response schema and then
used to validate what comes back. Field names are camelCase on the wire.
"""
from __future__ import annotations
from enum import Enum
from typing import Annotated, List, Literal, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from errors import AnalysisParseError


class MediaKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"

    @property
    def mime_type(self) -> str:
        return "video/mp4" if self is MediaKind.VIDEO else "audio/mpeg"


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Score = Annotated[float, Field(ge=0, le=10)]


# -------- building blocks --------
class ScoredExamples(_Schema):
    score: Score
    feedback: str
    examples: List[str]


class ScoredIndicators(_Schema):
    score: Score
    feedback: str
    indicators: List[str]


class ScoredIssues(_Schema):
    score: Score
    feedback: str
    issues: List[str]


class ScoredNotes(_Schema):
    score: Score
    feedback: str
    notes: List[str]


class ScoredDistractions(_Schema):
    score: Score
    feedback: str
    distractions: List[str]


class ScoredObservations(_Schema):
    score: Score
    feedback: str
    observations: List[str]


class Readiness(_Schema):
    score: Score
    feedback: str
    assessment: str


# -------- sections --------
class CommunicationSkills(_Schema):
    clarity: ScoredExamples
    articulation: ScoredExamples
    pace: ScoredExamples
    confidence: ScoredIndicators


class AudioQuality(_Schema):
    clarity: ScoredIssues
    volume: ScoredNotes
    background: ScoredDistractions


class BodyLanguage(_Schema):
    posture: ScoredObservations
    eye_contact: ScoredObservations
    gestures: ScoredObservations
    presence: ScoredObservations


class OverallPerformance(_Schema):
    professionalism: ScoredExamples
    engagement: ScoredIndicators
    readiness: Readiness


class ImmediateAction(_Schema):
    area: str
    suggestion: str
    priority: Literal["high", "medium", "low"]


class PracticeItem(_Schema):
    skill: str
    exercise: str
    frequency: str


class Resource(_Schema):
    type: str
    description: str
    link: str


class Recommendations(_Schema):
    immediate: List[ImmediateAction]
    practice: List[PracticeItem]
    resources: List[Resource]


class Summary(_Schema):
    strengths: List[str]
    weaknesses: List[str]
    key_insights: List[str]
    overall_score: Score


# -------- top level --------
class AudioAnalysis(_Schema):
    type: Literal["audio"]
    communication_skills: CommunicationSkills
    audio_quality: AudioQuality
    overall_performance: OverallPerformance
    recommendations: Recommendations
    summary: Summary


class VideoAnalysis(_Schema):
    type: Literal["video"]
    communication_skills: CommunicationSkills
    body_language: BodyLanguage
    audio_quality: AudioQuality
    overall_performance: OverallPerformance
    recommendations: Recommendations
    summary: Summary


_SCHEMAS = {MediaKind.VIDEO: VideoAnalysis, MediaKind.AUDIO: AudioAnalysis}


def schema_for(kind: MediaKind) -> Type[BaseModel]:
    return _SCHEMAS[MediaKind(kind)]


def parse_analysis(kind: MediaKind, text: str) -> dict:
    """Validate raw model output against the kind's schema; camelCase dict on success."""
    if not text or not text.strip():
        raise AnalysisParseError(f"Empty {MediaKind(kind).value} analysis response")
    try:
        model = schema_for(kind).model_validate_json(text)
    except ValidationError as e:
        raise AnalysisParseError(
            f"Failed to parse {MediaKind(kind).value} analysis response: {e.error_count()} schema error(s), "
            f"first: {e.errors()[0].get('msg')}"
        ) from e
    return model.model_dump(by_alias=True)
