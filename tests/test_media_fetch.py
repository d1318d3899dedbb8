from unittest.mock import MagicMock

import pytest
import requests

from errors import MediaFetchError, ProcessingError, is_retryable
from media_fetch import HEADERS, fetch_media, file_name_for


class FakeResponse:
    def __init__(self, status_code=200, chunks=(b"abc",), headers=None, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {"Content-Type": "audio/mpeg"}
        self._chunks = list(chunks)

    def iter_content(self, chunk_size=1):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _session(response=None, error=None):
    s = MagicMock()
    if error is not None:
        s.get.side_effect = error
    else:
        s.get.return_value = response
    return s


def test_fetch_collects_body():
    session = _session(FakeResponse(chunks=[b"ab", b"", b"cd"]))

    media = fetch_media("https://cdn.example.com/rec/combined.mp3", "audio", session=session)

    assert media.content == b"abcd"
    assert media.size_bytes == 4
    assert media.file_name == "combined.mp3"
    assert media.content_type == "audio/mpeg"
    kwargs = session.get.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["headers"] == HEADERS


def test_non_2xx_fails():
    session = _session(FakeResponse(status_code=404, reason="Not Found"))
    with pytest.raises(MediaFetchError, match="Failed to fetch video: 404 Not Found"):
        fetch_media("https://cdn.example.com/v.mp4", "video", session=session)


def test_declared_size_over_limit_fails_before_download():
    resp = FakeResponse(headers={"Content-Length": "2048"})
    resp.iter_content = MagicMock()
    with pytest.raises(MediaFetchError, match="exceeds limit"):
        fetch_media("https://cdn.example.com/a.mp3", "audio", max_bytes=1024, session=_session(resp))
    resp.iter_content.assert_not_called()


def test_streamed_size_over_limit_fails():
    resp = FakeResponse(chunks=[b"x" * 600, b"x" * 600])
    with pytest.raises(MediaFetchError, match="body exceeds limit"):
        fetch_media("https://cdn.example.com/a.mp3", "audio", max_bytes=1000, session=_session(resp))


def test_timeout_is_a_fetch_error():
    session = _session(error=requests.Timeout("read timed out"))
    with pytest.raises(MediaFetchError, match="timed out"):
        fetch_media("https://cdn.example.com/a.mp3", "audio", timeout=5, session=session)


def test_connection_error_is_a_fetch_error():
    session = _session(error=requests.ConnectionError("refused"))
    with pytest.raises(MediaFetchError) as exc:
        fetch_media("https://cdn.example.com/a.mp3", "audio", session=session)
    assert isinstance(exc.value, ProcessingError)
    assert is_retryable(exc.value)


def test_empty_body_fails():
    with pytest.raises(MediaFetchError, match="empty"):
        fetch_media("https://cdn.example.com/a.mp3", "audio", session=_session(FakeResponse(chunks=[])))


@pytest.mark.parametrize("url,kind,expected", [
    ("https://cdn.example.com/rec/interview.mp4", "video", "interview.mp4"),
    ("https://cdn.example.com/rec/interview%20one.mp3?sig=abc", "audio", "interview one.mp3"),
    ("https://cdn.example.com/rec/blob", "audio", "blob.mp3"),
    ("https://cdn.example.com/", "video", "interview-video.mp4"),
])
def test_file_name_for(url, kind, expected):
    assert file_name_for(url, kind) == expected
