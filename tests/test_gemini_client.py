import base64
from unittest.mock import MagicMock

import pytest
import requests

from splitscribe.gemini_client import GeminiClient, GeminiError, GeminiSettings, TRANSCRIBE_PROMPT


def _response(status_code, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    response.text = text
    return response


def _ok(text):
    return _response(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _client(session, **overrides):
    settings = GeminiSettings(api_key="key-123", **overrides)
    client = GeminiClient(settings, session=session)
    client._sleep = lambda seconds: None
    return client


def test_transcribe_sends_inline_audio():
    session = MagicMock()
    session.post.return_value = _ok("  hello world ")
    client = _client(session, model="gemini-test")

    assert client.transcribe(b"RIFFdata", "audio/wav") == "hello world"

    args, kwargs = session.post.call_args
    assert args[0] == "https://generativelanguage.googleapis.com/v1beta/models/gemini-test:generateContent"
    assert kwargs["headers"]["x-goog-api-key"] == "key-123"
    parts = kwargs["json"]["contents"][0]["parts"]
    assert parts[0]["inline_data"]["mime_type"] == "audio/wav"
    assert base64.b64decode(parts[0]["inline_data"]["data"]) == b"RIFFdata"
    assert parts[1]["text"] == TRANSCRIBE_PROMPT


def test_generate_text_overrides_generation_config():
    session = MagicMock()
    session.post.return_value = _ok("summary")
    client = _client(session)

    assert client.generate_text("prompt", max_output_tokens=256, temperature=0.1) == "summary"
    config = session.post.call_args.kwargs["json"]["generationConfig"]
    assert config["maxOutputTokens"] == 256
    assert config["temperature"] == 0.1


def test_transient_status_is_retried():
    session = MagicMock()
    session.post.side_effect = [
        _response(429, {"error": {"message": "Resource has been exhausted"}}),
        _ok("after retry"),
    ]
    client = _client(session)

    assert client.generate_text("p") == "after retry"
    assert session.post.call_count == 2


def test_retries_exhausted_raise_with_status():
    session = MagicMock()
    session.post.return_value = _response(503, {"error": {"message": "overloaded"}})
    client = _client(session, max_attempts=2)

    with pytest.raises(GeminiError) as excinfo:
        client.generate_text("p")
    assert excinfo.value.status_code == 503
    assert "overloaded" in str(excinfo.value)
    assert session.post.call_count == 2


def test_client_error_is_not_retried():
    session = MagicMock()
    session.post.return_value = _response(400, text="bad request")
    client = _client(session)

    with pytest.raises(GeminiError) as excinfo:
        client.generate_text("p")
    assert excinfo.value.status_code == 400
    assert excinfo.value.retryable is False
    assert session.post.call_count == 1


def test_connection_errors_are_retried():
    session = MagicMock()
    session.post.side_effect = [requests.ConnectionError("down"), _ok("back")]
    assert _client(session).generate_text("p") == "back"


def test_empty_candidates_raise():
    session = MagicMock()
    session.post.return_value = _response(200, {"candidates": []})
    with pytest.raises(GeminiError):
        _client(session).generate_text("p")


def test_api_key_is_required():
    with pytest.raises(ValueError):
        GeminiClient(GeminiSettings(api_key=""), session=MagicMock())
