from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class SplitMode(str, Enum):
    SIZE = "size"
    COUNT = "count"

    @classmethod
    def from_flag(cls, flag: str) -> "SplitMode":
        normalized = flag.strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unsupported split mode: {flag}")


class TranscriptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {TranscriptionStatus.COMPLETED, TranscriptionStatus.ERROR, TranscriptionStatus.CANCELLED}
)

ALLOWED_TRANSITIONS = {
    TranscriptionStatus.PENDING: frozenset({TranscriptionStatus.PROCESSING, TranscriptionStatus.CANCELLED}),
    TranscriptionStatus.PROCESSING: frozenset({TranscriptionStatus.COMPLETED, TranscriptionStatus.ERROR}),
    TranscriptionStatus.COMPLETED: frozenset(),
    TranscriptionStatus.ERROR: frozenset(),
    TranscriptionStatus.CANCELLED: frozenset(),
}


@dataclass
class MediaBuffer:
    """Decoded PCM audio, float32 samples shaped ``(channel_count, frame_count)``."""

    sample_rate: int
    samples: np.ndarray

    @property
    def channel_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frame_count / float(self.sample_rate)


@dataclass(frozen=True)
class SplitPlan:
    mode: SplitMode
    part_count: int
    boundaries: Tuple[Tuple[float, float], ...]

    @property
    def total_duration(self) -> float:
        return sum(end - start for start, end in self.boundaries)


@dataclass(frozen=True)
class AudioPart:
    index: int
    file_name: str
    data: bytes = field(repr=False)
    byte_size: int
    duration_sec: float
    start_sec: float
    end_sec: float

    @property
    def part_number(self) -> int:
        return self.index + 1


@dataclass(frozen=True)
class WorkItem:
    """One payload submitted to the remote endpoint."""

    file_name: str
    data: bytes = field(repr=False)
    mime_type: str = "audio/wav"
    prompt: Optional[str] = None

    @classmethod
    def from_part(cls, part: AudioPart, prompt: Optional[str] = None) -> "WorkItem":
        return cls(file_name=part.file_name, data=part.data, mime_type="audio/wav", prompt=prompt)


@dataclass(frozen=True)
class TranscriptionItem:
    part_index: int
    file_name: str
    status: TranscriptionStatus = TranscriptionStatus.PENDING
    result_text: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def part_number(self) -> int:
        return self.part_index + 1

    def to_dict(self) -> dict:
        payload = {
            "part_number": self.part_number,
            "file_name": self.file_name,
            "status": self.status.value,
        }
        if self.result_text is not None:
            payload["result_text"] = self.result_text
        if self.error_message is not None:
            payload["error"] = self.error_message
        return payload


@dataclass(frozen=True)
class ProgressSnapshot:
    completed: int
    total: int
    status_text: str
    items: Tuple[TranscriptionItem, ...]


@dataclass
class CaptureFrame:
    id: str
    captured_at_sec: float
    image_bytes: bytes = field(repr=False)
    mime_type: str = "image/jpeg"
    uploaded: bool = False
    description: Optional[str] = None
    error: Optional[str] = None

    @property
    def analyzed(self) -> bool:
        return self.description is not None or self.error is not None


@dataclass(frozen=True)
class SimilarityGroup:
    representative_id: str
    member_ids: Tuple[str, ...]
    timestamp_sec: float


@dataclass(frozen=True)
class CostEstimate:
    image_count: int
    estimated_tokens: int
    estimated_cost: int
    warning: Optional[str] = None
