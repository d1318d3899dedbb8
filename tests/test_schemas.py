import json

import pytest

from conftest import sample_analysis
from errors import AnalysisParseError
from prompts import AUDIO_ANALYSIS_PROMPT, VIDEO_ANALYSIS_PROMPT, prompt_for
from schemas import AudioAnalysis, MediaKind, VideoAnalysis, parse_analysis, schema_for


def test_schema_and_prompt_per_kind():
    assert schema_for(MediaKind.AUDIO) is AudioAnalysis
    assert schema_for("video") is VideoAnalysis
    assert prompt_for(MediaKind.VIDEO) == VIDEO_ANALYSIS_PROMPT
    assert prompt_for("audio") == AUDIO_ANALYSIS_PROMPT
    assert MediaKind.VIDEO.mime_type == "video/mp4"
    assert MediaKind.AUDIO.mime_type == "audio/mpeg"


def test_parse_keeps_camel_case_keys():
    doc = parse_analysis(MediaKind.VIDEO, json.dumps(sample_analysis("video")))

    assert doc["type"] == "video"
    assert doc["bodyLanguage"]["eyeContact"]["score"] == 7
    assert doc["summary"]["keyInsights"] == ["good technical depth"]
    assert doc["summary"]["overallScore"] == 7.5
    assert "body_language" not in doc


@pytest.mark.parametrize("path", [
    ("communicationSkills", "pace", "examples"),
    ("audioQuality", "background", "distractions"),
    ("recommendations", "resources"),
    ("summary", "keyInsights"),
])
def test_evidence_lists_are_required(path):
    raw = sample_analysis("audio")
    parent = raw
    for key in path[:-1]:
        parent = parent[key]
    del parent[path[-1]]

    with pytest.raises(AnalysisParseError):
        parse_analysis(MediaKind.AUDIO, json.dumps(raw))


def test_empty_lists_are_allowed():
    raw = sample_analysis("audio")
    raw["recommendations"]["practice"] = []
    raw["summary"]["weaknesses"] = []
    doc = parse_analysis(MediaKind.AUDIO, json.dumps(raw))
    assert doc["recommendations"]["practice"] == []


def test_lists_are_required_in_the_model_schema():
    required = set(AudioAnalysis.model_json_schema(by_alias=True)["$defs"]["Summary"]["required"])
    assert required == {"strengths", "weaknesses", "keyInsights", "overallScore"}


def test_audio_does_not_require_body_language():
    doc = parse_analysis(MediaKind.AUDIO, json.dumps(sample_analysis("audio")))
    assert "bodyLanguage" not in doc


def test_video_requires_body_language():
    with pytest.raises(AnalysisParseError, match="video"):
        parse_analysis(MediaKind.VIDEO, json.dumps(sample_analysis("audio") | {"type": "video"}))


def test_score_out_of_range_is_rejected():
    raw = sample_analysis("audio")
    raw["summary"]["overallScore"] = 11
    with pytest.raises(AnalysisParseError):
        parse_analysis(MediaKind.AUDIO, json.dumps(raw))


def test_wrong_kind_tag_is_rejected():
    with pytest.raises(AnalysisParseError):
        parse_analysis(MediaKind.AUDIO, json.dumps(sample_analysis("video")))


@pytest.mark.parametrize("text", ["", "   ", "not json", "[]"])
def test_unparseable_output(text):
    with pytest.raises(AnalysisParseError):
        parse_analysis(MediaKind.AUDIO, text)


def test_priority_must_be_known():
    raw = sample_analysis("audio")
    raw["recommendations"]["immediate"][0]["priority"] = "urgent"
    with pytest.raises(AnalysisParseError):
        parse_analysis(MediaKind.AUDIO, json.dumps(raw))
