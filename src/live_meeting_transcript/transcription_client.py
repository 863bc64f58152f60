"""HTTP client for the external transcription service."""

from __future__ import annotations

import logging
import math
from typing import Optional

import httpx

from .config import DEFAULT_ENDPOINT
from .errors import ConfigurationError, TranscriptionServiceError, TranscriptionTimeout
from .types import TranscriptionResult

logger = logging.getLogger(__name__)


class TranscriptionClient:
    """Posts audio chunks as multipart uploads and parses ``{text, confidence?}``."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = "whisper-1",
        *,
        timeout: float = 180.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Transcription API key missing")
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def transcribe(
        self,
        payload: bytes,
        language: str,
        filename: str = "chunk.wav",
        mime_type: str = "audio/wav",
    ) -> TranscriptionResult:
        files = {"file": (filename, payload, mime_type)}
        data = {"model": self.model, "language": language}
        try:
            resp = self._client.post(self.endpoint, headers=self._headers(), files=files, data=data)
        except httpx.TimeoutException as exc:
            raise TranscriptionTimeout(f"Transcription timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TranscriptionServiceError(f"Transcription request failed: {exc}") from exc

        if resp.status_code >= 300:
            body = resp.text
            logger.error(f"Transcription API error {resp.status_code}: {body[:500]}")
            if resp.status_code == 401:
                raise TranscriptionServiceError("Unauthorized: check API key", resp.status_code, body)
            if resp.status_code == 429:
                raise TranscriptionServiceError("Transcription rate limit reached", resp.status_code, body)
            raise TranscriptionServiceError(
                f"Transcription failed: {resp.status_code} {resp.reason_phrase}", resp.status_code, body
            )

        try:
            result = resp.json()
        except ValueError as exc:
            raise TranscriptionServiceError(f"Invalid transcription response: {exc}", resp.status_code, resp.text) from exc

        if not isinstance(result, dict) or not isinstance(result.get("text"), str):
            raise TranscriptionServiceError(
                "Invalid transcription response: missing or invalid text field", resp.status_code, resp.text
            )

        confidence = result.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or math.isnan(confidence):
            confidence = None
        return TranscriptionResult(text=result["text"].strip(), confidence=confidence)

    def close(self) -> None:
        self._client.close()
