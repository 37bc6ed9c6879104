from types import SimpleNamespace

import pytest

from splitscribe import local_transcriber
from splitscribe.local_transcriber import (
    BackendMode,
    LocalTranscriber,
    LocalWhisperSettings,
    resolve_backend_mode,
)


class DummyWhisperModel:
    instances = []

    def __init__(self, model, device, compute_type, local_files_only):
        self.args = dict(model=model, device=device, compute_type=compute_type, local_files_only=local_files_only)
        self.calls = []
        DummyWhisperModel.instances.append(self)

    def transcribe(self, path, beam_size, language, vad_filter):
        with open(path, "rb") as f:
            payload = f.read()
        self.calls.append(dict(path=path, payload=payload, language=language, vad_filter=vad_filter))
        segments = (SimpleNamespace(text=text) for text in [" hello", " there "])
        return segments, SimpleNamespace(language="en", duration=1.5)


@pytest.fixture
def fake_whisper(monkeypatch):
    DummyWhisperModel.instances = []
    monkeypatch.setattr(local_transcriber, "WhisperModel", DummyWhisperModel)
    return DummyWhisperModel


def test_auto_prefers_gemini_only_with_key():
    assert resolve_backend_mode(BackendMode.AUTO, "key") is BackendMode.GEMINI
    assert resolve_backend_mode(BackendMode.AUTO, "") is BackendMode.LOCAL
    assert resolve_backend_mode(BackendMode.LOCAL, "key") is BackendMode.LOCAL
    assert BackendMode.from_flag(" Gemini ") is BackendMode.GEMINI
    with pytest.raises(ValueError):
        BackendMode.from_flag("cloud")


def test_settings_from_dict_treats_auto_language_as_detect():
    settings = LocalWhisperSettings.from_dict({"model": "small", "language": "auto", "vad": ""})
    assert settings.model == "small"
    assert settings.language is None
    assert settings.vad is None


def test_transcribe_joins_segments_and_loads_model_once(fake_whisper):
    settings = LocalWhisperSettings(model="tiny", language="ja", vad="silero", allow_download=False)
    transcriber = LocalTranscriber(settings)

    assert transcriber.transcribe(b"RIFF-part-1", "audio/wav", "ignored prompt") == "hello there"
    assert transcriber.transcribe(b"RIFF-part-2", "audio/wav") == "hello there"

    assert len(fake_whisper.instances) == 1
    model = fake_whisper.instances[0]
    assert model.args["local_files_only"] is True
    assert [call["payload"] for call in model.calls] == [b"RIFF-part-1", b"RIFF-part-2"]
    assert model.calls[0]["path"].endswith(".wav")
    assert model.calls[0]["language"] == "ja"
    assert model.calls[0]["vad_filter"] is True


def test_missing_library_is_reported(monkeypatch):
    monkeypatch.setattr(local_transcriber, "WhisperModel", None)
    with pytest.raises(RuntimeError, match="faster-whisper"):
        LocalTranscriber()
