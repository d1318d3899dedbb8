# media_fetch.py
from __future__ import annotations
import logging
import os
import posixpath
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, unquote

import requests

from errors import MediaFetchError

UA = os.getenv("MEDIA_FETCH_UA", "MockVerse-MediaAnalysis/1.0")
HEADERS = {"User-Agent": UA, "Accept": "*/*"}
CHUNK = 1024 * 1024
DEFAULT_TIMEOUT = 300
DEFAULT_MAX_BYTES = 500 * 1024 * 1024

LOG = logging.getLogger("pipeline")

_EXT = {"video": "mp4", "audio": "mp3"}


@dataclass
class FetchedMedia:
    content: bytes
    file_name: str
    content_type: Optional[str]

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def file_name_for(url: str, kind: str) -> str:
    """Last path segment of the URL, with an extension; falls back to interview-<kind>.<ext>."""
    ext = _EXT.get(kind, "bin")
    name = posixpath.basename(unquote(urlparse(url).path or ""))
    if not name:
        return f"interview-{kind}.{ext}"
    return name if "." in name else f"{name}.{ext}"


def fetch_media(url: str, kind: str, timeout: float = DEFAULT_TIMEOUT, max_bytes: int = DEFAULT_MAX_BYTES,
                session: Optional[requests.Session] = None) -> FetchedMedia:
    """Download the whole recording into memory.

    `timeout` bounds the entire transfer, not just each socket read. Non-2xx,
    oversize bodies, network errors and timeouts raise MediaFetchError.
    """
    http = session or requests
    deadline = time.monotonic() + timeout
    try:
        with http.get(url, headers=HEADERS, timeout=(30, timeout), stream=True) as r:
            if not 200 <= r.status_code < 300:
                raise MediaFetchError(f"Failed to fetch {kind}: {r.status_code} {r.reason}")

            declared = r.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise MediaFetchError(f"Failed to fetch {kind}: {declared} bytes exceeds limit of {max_bytes}")

            buf = bytearray()
            for chunk in r.iter_content(chunk_size=CHUNK):
                if not chunk:
                    continue
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise MediaFetchError(f"Failed to fetch {kind}: body exceeds limit of {max_bytes} bytes")
                if time.monotonic() > deadline:
                    raise MediaFetchError(f"Failed to fetch {kind}: download exceeded {timeout:.0f}s")
            content_type = r.headers.get("Content-Type")
    except requests.Timeout as e:
        raise MediaFetchError(f"Failed to fetch {kind}: timed out after {timeout:.0f}s") from e
    except requests.RequestException as e:
        raise MediaFetchError(f"Failed to fetch {kind}: {e}") from e

    if not buf:
        raise MediaFetchError(f"Failed to fetch {kind}: empty response body")

    LOG.info("%s fetched successfully. Size: %d bytes", kind, len(buf))
    return FetchedMedia(content=bytes(buf), file_name=file_name_for(url, kind), content_type=content_type)
