import json
import os
import shutil
from pathlib import Path
from typing import Any, Dict

from .gemini_client import DEFAULT_BASE_URL, DEFAULT_MODEL

CONFIG_ROOT_DIR = Path.home() / ".splitscribe"

_INT_KEYS = {
    "part_count",
    "size_bit_depth",
    "count_bit_depth",
    "concurrency",
    "request_delay_ms",
    "max_attempts",
    "max_analysis_images",
    "capture_interval",
    "max_captures",
}
_FLOAT_KEYS = {"max_part_size_mb", "request_timeout", "duplicate_threshold"}
_BOOL_KEYS = {"duplicate_detection", "summarize", "local_allow_download"}


def get_default_config_dir() -> Path:
    env_override = os.getenv("SPLITSCRIBE_CONFIG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return CONFIG_ROOT_DIR


def get_default_config_path() -> Path:
    return get_default_config_dir() / "config.json"


DEFAULT_CONFIG_PATH = get_default_config_path()


class AppConfig:
    """Read-only settings: a JSON object merged over built-in defaults."""

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self.load_warning: str | None = None
        self.defaults: Dict[str, Any] = {
            "output_dir": str(Path.cwd() / "splitscribe_output"),
            "gemini_api_key": "",
            "gemini_model": DEFAULT_MODEL,
            "gemini_base_url": DEFAULT_BASE_URL,
            "request_timeout": 120.0,
            "max_attempts": 3,
            "transcription_backend": "auto",
            "local_model": "tiny",
            "local_device": "cpu",
            "local_compute_type": "int8",
            "local_language": "",
            "local_vad": "",
            "local_allow_download": True,
            "split_mode": "size",
            "max_part_size_mb": 25.0,
            "part_count": 2,
            "size_bit_depth": 8,
            "count_bit_depth": 16,
            "concurrency": 1,
            "request_delay_ms": 1000,
            "transcription_prompt": "",
            "summary_prompt": "",
            "summarize": True,
            "duplicate_detection": True,
            "duplicate_threshold": 0.95,
            "max_analysis_images": 10,
            "capture_interval": 60,
            "max_captures": 100,
        }
        self.settings = self.load_config()

    def _preserve_corrupt_config(self) -> Path | None:
        """Keep a copy of the unreadable config so users can inspect what went wrong."""
        if not self.config_path.exists():
            return None
        suffix = self.config_path.suffix or ".json"
        backup = self.config_path.with_suffix(suffix + ".corrupt")
        counter = 1
        while backup.exists():
            backup = self.config_path.with_suffix(f"{suffix}.corrupt{counter}")
            counter += 1
        try:
            shutil.copy2(self.config_path, backup)
            return backup
        except OSError:
            return None

    def load_config(self) -> Dict[str, Any]:
        self.load_warning = None
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    raw_settings = json.load(f)
                if isinstance(raw_settings, dict):
                    return {**self.defaults, **raw_settings}
                self.load_warning = f"Config at {self.config_path} is not a JSON object. Using defaults."
            except (json.JSONDecodeError, IOError) as exc:
                backup = self._preserve_corrupt_config()
                note = f"Failed to parse config at {self.config_path}: {exc}. Using defaults."
                if backup:
                    note += f" Saved unreadable copy as {backup.name}."
                self.load_warning = note
        return dict(self.defaults)

    def get(self, key: str) -> Any:
        """Return a setting coerced to its expected type, falling back to the default."""
        if key == "gemini_api_key":
            return self.settings.get(key) or os.getenv("GEMINI_API_KEY", "")
        if key in _INT_KEYS:
            try:
                return int(self.settings.get(key, self.defaults.get(key, 0)))
            except (TypeError, ValueError):
                return int(self.defaults.get(key, 0))
        if key in _FLOAT_KEYS:
            try:
                return float(self.settings.get(key, self.defaults.get(key, 0.0)))
            except (TypeError, ValueError):
                return float(self.defaults.get(key, 0.0))
        if key in _BOOL_KEYS:
            return _parse_bool(self.settings.get(key), bool(self.defaults.get(key, False)))
        return self.settings.get(key, self.defaults.get(key))


def _parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off", ""}:
            return False
    return default
