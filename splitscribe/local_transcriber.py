"""Offline transcription backend built on faster-whisper."""
from __future__ import annotations

import logging
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .audio import suffix_for_mime

try:  # pragma: no cover - optional dependency during tests
    from faster_whisper import WhisperModel
except ImportError:  # pragma: no cover
    WhisperModel = None  # type: ignore

logger = logging.getLogger(__name__)


class BackendMode(str, Enum):
    LOCAL = "local"
    GEMINI = "gemini"
    AUTO = "auto"

    @classmethod
    def from_flag(cls, flag: str) -> "BackendMode":
        normalized = flag.strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unsupported transcription backend: {flag}")


def resolve_backend_mode(mode: BackendMode, api_key: Optional[str]) -> BackendMode:
    """``auto`` means Gemini when an API key is configured, local otherwise."""
    if mode is BackendMode.AUTO:
        return BackendMode.GEMINI if api_key else BackendMode.LOCAL
    return mode


@dataclass
class LocalWhisperSettings:
    model: str = "tiny"
    device: str = "cpu"
    compute_type: str = "int8"
    language: Optional[str] = None
    vad: Optional[str] = None
    allow_download: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalWhisperSettings":
        language = (data.get("language") or "").strip()
        return cls(
            model=data.get("model") or "tiny",
            device=data.get("device") or "cpu",
            compute_type=data.get("compute_type") or "int8",
            language=None if language in ("", "auto") else language,
            vad=data.get("vad") or None,
            allow_download=bool(data.get("allow_download", True)),
        )


class LocalTranscriber:
    """Whisper checkpoint loaded lazily on first use and shared by all workers.

    ``transcribe`` matches the orchestrator backend signature. The prompt is a
    Gemini instruction and has no Whisper equivalent, so it is ignored.
    """

    def __init__(self, settings: Optional[LocalWhisperSettings] = None) -> None:
        if WhisperModel is None:
            raise RuntimeError("faster-whisper is not installed; install splitscribe[local]")
        self.settings = settings or LocalWhisperSettings()
        self._model = None
        self._lock = threading.Lock()

    def __enter__(self) -> "LocalTranscriber":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def transcribe(self, data: bytes, mime_type: str, prompt: Optional[str] = None) -> str:
        model = self._ensure_model()
        with tempfile.TemporaryDirectory(prefix="splitscribe-whisper-") as tmp:
            media_path = Path(tmp) / f"part{suffix_for_mime(mime_type)}"
            media_path.write_bytes(data)
            segments, info = model.transcribe(
                str(media_path),
                beam_size=1,
                language=self.settings.language,
                vad_filter=self.settings.vad == "silero",
            )
            text = " ".join(getattr(seg, "text", "").strip() for seg in segments).strip()
        logger.info(
            "Transcribed part locally (language=%s, duration=%.2fs)",
            getattr(info, "language", "unknown"),
            getattr(info, "duration", 0.0),
        )
        return text

    def close(self) -> None:
        with self._lock:
            self._model = None

    def _ensure_model(self):
        with self._lock:
            if self._model is None:
                logger.info(
                    "Loading Whisper model %s on %s (%s)",
                    self.settings.model,
                    self.settings.device,
                    self.settings.compute_type,
                )
                self._model = WhisperModel(
                    self.settings.model,
                    device=self.settings.device,
                    compute_type=self.settings.compute_type,
                    local_files_only=not self.settings.allow_download,
                )
            return self._model
