from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from requests import Response, Session
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.0-flash-lite"

TRANSCRIBE_PROMPT = (
    "Transcribe this audio file accurately.\n"
    "- Write down what each speaker says faithfully.\n"
    "- Add appropriate punctuation.\n"
    "- Spell technical terms and proper nouns correctly.\n"
    "- Drop filler words where it helps readability.\n"
    "- If there are several speakers, distinguish them.\n\n"
    "Output the transcription only."
)

_RETRYABLE_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504, 520, 521, 522, 524}


class GeminiError(RuntimeError):
    """Raised when the Gemini endpoint returns an error or cannot be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(slots=True)
class GeminiSettings:
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 120.0
    max_attempts: int = 3
    temperature: float = 0.4
    top_k: int = 32
    top_p: float = 1.0
    max_output_tokens: Optional[int] = None
    extra_generation_config: Dict[str, Any] = field(default_factory=dict)


class GeminiClient:
    """Blocking ``generateContent`` client.

    ``transcribe`` matches the backend signature expected by
    :class:`pipeline.orchestrator.TranscriptionOrchestrator` and
    ``generate_text`` the text generator used by the summary chainer.
    """

    def __init__(self, settings: GeminiSettings, session: Optional[Session] = None):
        if not settings.api_key:
            raise ValueError("Gemini API key is required.")
        if not settings.model:
            raise ValueError("Gemini model is required.")
        self.settings = settings
        self._session = session or requests.Session()
        self._max_attempts = max(1, int(settings.max_attempts))

    @property
    def session(self) -> Session:
        return self._session

    def transcribe(self, data: bytes, mime_type: str, prompt: Optional[str] = None) -> str:
        parts = [
            {
                "inline_data": {
                    "mime_type": mime_type,
                    "data": base64.standard_b64encode(data).decode("ascii"),
                }
            },
            {"text": prompt or TRANSCRIBE_PROMPT},
        ]
        return self._generate(parts)

    def generate_text(self, prompt: str, *, max_output_tokens: Optional[int] = None, temperature: Optional[float] = None) -> str:
        return self._generate(
            [{"text": prompt}], max_output_tokens=max_output_tokens, temperature=temperature
        )

    def _generate(
        self,
        parts: List[dict],
        *,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": self._generation_config(max_output_tokens, temperature),
        }
        data = self._post(f"v1beta/models/{self.settings.model}:generateContent", payload)
        return self._extract_text(data)

    def _generation_config(self, max_output_tokens: Optional[int], temperature: Optional[float]) -> dict:
        config: Dict[str, Any] = {
            "temperature": self.settings.temperature if temperature is None else temperature,
            "topK": self.settings.top_k,
            "topP": self.settings.top_p,
        }
        limit = max_output_tokens or self.settings.max_output_tokens
        if limit and limit > 0:
            config["maxOutputTokens"] = int(limit)
        config.update(self.settings.extra_generation_config)
        return config

    @staticmethod
    def _extract_text(data: dict) -> str:
        try:
            candidate = data["candidates"][0]
            parts = candidate["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GeminiError(f"Unexpected response format: {GeminiClient._clip_text(str(data))}", retryable=False) from exc
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            reason = candidate.get("finishReason") if isinstance(candidate, dict) else None
            raise GeminiError(f"Empty response from Gemini (finishReason={reason}).", retryable=False)
        return text.strip()

    def _post(self, path: str, payload: dict) -> dict:
        url = self._url(path)
        attempt = 1
        last_error: Optional[GeminiError] = None
        while attempt <= self._max_attempts:
            try:
                response: Response = self._session.post(
                    url, json=payload, headers=self._headers(), timeout=self.settings.timeout
                )
            except RequestException as exc:
                retryable = self._should_retry(attempt)
                error = GeminiError(f"Failed to reach Gemini: {exc}", retryable=retryable)
                if not retryable:
                    raise error from exc
                last_error = error
                self._sleep(self._retry_delay(attempt))
                attempt += 1
                continue

            if response.status_code >= 400:
                retryable = self._should_retry(attempt, response.status_code)
                error = GeminiError(
                    f"Gemini error {response.status_code}: {self._error_message(response)}",
                    status_code=response.status_code,
                    retryable=retryable,
                )
                if not retryable:
                    raise error
                logger.warning("%s (attempt %d/%d)", error, attempt, self._max_attempts)
                last_error = error
                self._sleep(self._retry_delay(attempt))
                attempt += 1
                continue

            try:
                return response.json()
            except ValueError as exc:
                raise GeminiError(
                    f"Invalid JSON response from Gemini: {self._clip_text(response.text)}",
                    status_code=response.status_code,
                    retryable=False,
                ) from exc
        if last_error:
            raise last_error
        raise GeminiError("Gemini request failed.")

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.settings.api_key,
        }

    def _url(self, path: str) -> str:
        base = self.settings.base_url.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    @staticmethod
    def _error_message(response: Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return GeminiClient._clip_text(response.text)
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return GeminiClient._clip_text(response.text)

    @staticmethod
    def _clip_text(text: str, limit: int = 800) -> str:
        snippet = (text or "").strip()
        if not snippet:
            return "<empty response>"
        if len(snippet) <= limit:
            return snippet
        return f"{snippet[:limit]}…"

    @staticmethod
    def _retry_delay(attempt: int) -> float:
        return min(5.0, 0.5 * attempt)

    def _should_retry(self, attempt: int, status_code: Optional[int] = None) -> bool:
        if attempt >= self._max_attempts:
            return False
        if status_code is None:
            return True
        if status_code in _RETRYABLE_STATUSES:
            return True
        return 500 <= status_code < 600

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)
