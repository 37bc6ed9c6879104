"""Split recordings into bounded WAV parts and transcribe them through Gemini."""

from .audio import DecodeError, decode_audio, encode_wav
from .models import (
    AudioPart,
    CaptureFrame,
    MediaBuffer,
    SimilarityGroup,
    SplitMode,
    SplitPlan,
    TranscriptionItem,
    TranscriptionStatus,
    WorkItem,
)
from .splitter import DurationUnavailableError, SizeConstraintViolation, SplitError, plan_split, split_audio

__all__ = [
    "AudioPart",
    "CaptureFrame",
    "DecodeError",
    "DurationUnavailableError",
    "MediaBuffer",
    "SimilarityGroup",
    "SizeConstraintViolation",
    "SplitError",
    "SplitMode",
    "SplitPlan",
    "TranscriptionItem",
    "TranscriptionStatus",
    "WorkItem",
    "decode_audio",
    "encode_wav",
    "plan_split",
    "split_audio",
]
