"""
Tests for the transcription service client.
"""

import httpx
import pytest

from live_meeting_transcript.errors import (
    ConfigurationError,
    TranscriptionServiceError,
    TranscriptionTimeout,
)
from live_meeting_transcript.transcription_client import TranscriptionClient

ENDPOINT = "https://stt.example.com/v1/audio/transcriptions"


def make_client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    return TranscriptionClient("test-key", ENDPOINT, client=httpx.Client(transport=transport), **kwargs)


def test_transcribe_success():
    def handler(request):
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT
        assert request.headers["Authorization"] == "Bearer test-key"
        body = request.content.decode("utf-8", errors="ignore")
        assert 'name="file"; filename="chunk.wav"' in body
        assert 'name="model"' in body and "whisper-1" in body
        assert 'name="language"' in body and "de" in body
        return httpx.Response(200, json={"text": "  Guten Morgen zusammen  ", "confidence": 0.87})

    client = make_client(handler)
    result = client.transcribe(b"RIFF....WAVEfmt ", "de")

    assert result.text == "Guten Morgen zusammen"
    assert result.confidence == pytest.approx(0.87)


def test_missing_or_invalid_confidence_is_none():
    responses = iter([{"text": "hello there"}, {"text": "hello there", "confidence": "high"},
                      {"text": "hello there", "confidence": True}])

    def handler(request):
        return httpx.Response(200, json=next(responses))

    client = make_client(handler)
    for _ in range(3):
        assert client.transcribe(b"audio", "en").confidence is None


def test_unauthorized():
    client = make_client(lambda request: httpx.Response(401, text="bad key"))

    with pytest.raises(TranscriptionServiceError) as exc_info:
        client.transcribe(b"audio", "en")

    assert str(exc_info.value) == "Unauthorized: check API key"
    assert exc_info.value.status_code == 401
    assert exc_info.value.body == "bad key"


def test_rate_limited():
    client = make_client(lambda request: httpx.Response(429, json={"error": "slow down"}))

    with pytest.raises(TranscriptionServiceError) as exc_info:
        client.transcribe(b"audio", "en")

    assert exc_info.value.is_rate_limited


def test_server_error_message():
    client = make_client(lambda request: httpx.Response(500, text="oops"))

    with pytest.raises(TranscriptionServiceError, match="500"):
        client.transcribe(b"audio", "en")


def test_invalid_json():
    client = make_client(lambda request: httpx.Response(200, text="not json"))

    with pytest.raises(TranscriptionServiceError, match="Invalid transcription response"):
        client.transcribe(b"audio", "en")


def test_missing_text_field():
    client = make_client(lambda request: httpx.Response(200, json={"result": "hi"}))

    with pytest.raises(TranscriptionServiceError, match="text"):
        client.transcribe(b"audio", "en")


def test_timeout_maps_to_transcription_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(TranscriptionTimeout):
        client.transcribe(b"audio", "en")


def test_connection_error_maps_to_service_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = make_client(handler)
    with pytest.raises(TranscriptionServiceError, match="request failed"):
        client.transcribe(b"audio", "en")


def test_empty_key_rejected():
    with pytest.raises(ConfigurationError):
        TranscriptionClient("", ENDPOINT)


def test_close():
    http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"text": ""})))
    client = TranscriptionClient("k", ENDPOINT, client=http)
    client.close()
    assert http.is_closed
