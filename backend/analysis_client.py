# analysis_client.py
"""Thin wrapper over the Gemini Files API and structured generation (google-genai)."""
from __future__ import annotations
import io
import logging
from dataclasses import dataclass
from typing import Any, Optional, Type

from google import genai
from google.genai import types
from pydantic import BaseModel

from errors import ExternalFileError, ProcessingError

LOG = logging.getLogger("pipeline")

PROCESSING = "PROCESSING"
ACTIVE = "ACTIVE"
FAILED = "FAILED"


@dataclass
class FileHandle:
    name: str
    uri: Optional[str] = None
    mime_type: Optional[str] = None
    state: str = PROCESSING
    size_bytes: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_file(cls, f: Any) -> "FileHandle":
        state = getattr(f, "state", None)
        state = getattr(state, "value", state) or PROCESSING
        err = getattr(f, "error", None)
        return cls(
            name=f.name,
            uri=getattr(f, "uri", None),
            mime_type=getattr(f, "mime_type", None),
            state=str(state).upper(),
            size_bytes=getattr(f, "size_bytes", None),
            error=getattr(err, "message", None) if err else None,
        )


class MediaAnalysisClient:
    def __init__(self, api_key: str, model: str = "gemini-2.0-flash-lite", client: Optional[genai.Client] = None):
        if client is None and not api_key:
            raise ValueError("GOOGLE_GENERATIVE_AI_API_KEY is required for media analysis")
        self.model = model
        self._client = client or genai.Client(api_key=api_key)

    def upload(self, content: bytes, mime_type: str, display_name: str) -> FileHandle:
        LOG.info("Uploading media to Google Files API: %s", display_name)
        try:
            f = self._client.files.upload(
                file=io.BytesIO(content),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except Exception as e:
            raise ExternalFileError(f"Failed to upload media: {e}") from e
        handle = FileHandle.from_file(f)
        LOG.info("Uploaded file %s (state %s)", handle.name, handle.state)
        return handle

    def get_file_status(self, name: str) -> FileHandle:
        try:
            return FileHandle.from_file(self._client.files.get(name=name))
        except Exception as e:
            raise ExternalFileError(f"Failed to get file status for {name}: {e}") from e

    def generate_structured(self, handle: FileHandle, prompt: str, schema: Type[BaseModel]) -> str:
        contents = [types.Part.from_uri(file_uri=handle.uri, mime_type=handle.mime_type), prompt]
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=contents,
                config={"response_mime_type": "application/json", "response_schema": schema},
            )
        except Exception as e:
            raise ProcessingError(f"Analysis request failed: {e}") from e
        text = response.text or ""
        LOG.debug("analysis response for %s: %d chars", handle.name, len(text))
        return text

    def delete_file(self, name: str):
        self._client.files.delete(name=name)
        LOG.info("Cleaned up Google file: %s", name)

    def close(self):
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
