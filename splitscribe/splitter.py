"""Split planning and part encoding."""
from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import List, Optional, Union

from .audio import WAV_HEADER_SIZE, AudioSource, bytes_per_sample, decode_audio, encode_wav
from .models import AudioPart, SplitMode, SplitPlan

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DEFAULT_SIZE_BIT_DEPTH = 8
DEFAULT_COUNT_BIT_DEPTH = 16


class SplitError(RuntimeError):
    """Fatal failure of a split operation; no partial output is produced."""


class DurationUnavailableError(SplitError):
    """Raised when the total duration is missing or not a positive number."""


class SizeConstraintViolation(SplitError):
    """Raised when an encoded part is larger than the requested maximum."""

    def __init__(self, part_index: int, byte_size: int, max_part_bytes: int):
        super().__init__(
            f"Part {part_index + 1} is {byte_size} bytes, exceeding the requested maximum of {max_part_bytes} bytes."
        )
        self.part_index = part_index
        self.byte_size = byte_size
        self.max_part_bytes = max_part_bytes


def mb_to_bytes(megabytes: float) -> int:
    return int(megabytes * BYTES_PER_MB)


def default_bit_depth(mode: SplitMode) -> int:
    return DEFAULT_SIZE_BIT_DEPTH if mode is SplitMode.SIZE else DEFAULT_COUNT_BIT_DEPTH


def estimate_wav_size(duration_sec: float, sample_rate: int, channel_count: int, bit_depth: int) -> float:
    """Size of the whole recording re-encoded as a single WAV file."""
    return sample_rate * channel_count * bytes_per_sample(bit_depth) * duration_sec + WAV_HEADER_SIZE


def plan_split(
    total_duration_sec: Optional[float],
    original_byte_size: int,
    mode: Union[SplitMode, str],
    *,
    max_part_bytes: Optional[int] = None,
    part_count: Optional[int] = None,
    sample_rate: int = 44100,
    channel_count: int = 2,
    bit_depth: int = DEFAULT_COUNT_BIT_DEPTH,
    fallback_duration_sec: Optional[float] = None,
) -> SplitPlan:
    """Compute the part count and uniform time boundaries for a split.

    In size mode the estimate takes the larger of the re-encoded PCM size and
    the source file size: compressed sources decode into far larger PCM than
    their file size suggests. The count is floored at 2, then raised until the
    largest part (its own header plus one frame of rounding slack included)
    fits under ``max_part_bytes``.

    A missing duration is an error. ``fallback_duration_sec`` is the explicit
    best-effort escape hatch and is logged as such.
    """
    mode = SplitMode.from_flag(mode) if isinstance(mode, str) else mode
    duration = _resolve_duration(total_duration_sec, fallback_duration_sec)

    if mode is SplitMode.SIZE:
        count = _size_mode_part_count(
            duration, original_byte_size, max_part_bytes, sample_rate, channel_count, bit_depth
        )
    else:
        if part_count is None or int(part_count) < 1:
            raise ValueError(f"Count mode requires part_count >= 1, got {part_count}")
        count = int(part_count)

    part_duration = duration / count
    boundaries = []
    for i in range(count):
        start = i * part_duration
        end = duration if i == count - 1 else min((i + 1) * part_duration, duration)
        boundaries.append((start, end))
    logger.info(
        "Split plan: mode=%s, %d part(s) of %.2fs from %.2fs total",
        mode.value,
        count,
        part_duration,
        duration,
    )
    return SplitPlan(mode=mode, part_count=count, boundaries=tuple(boundaries))


def _resolve_duration(total_duration_sec: Optional[float], fallback_duration_sec: Optional[float]) -> float:
    if _valid_duration(total_duration_sec):
        return float(total_duration_sec)
    if _valid_duration(fallback_duration_sec):
        logger.warning(
            "Duration unavailable (%r); using explicit fallback of %.1fs. Part count may be wrong.",
            total_duration_sec,
            fallback_duration_sec,
        )
        return float(fallback_duration_sec)
    raise DurationUnavailableError(
        f"Cannot plan a split without a known duration (got {total_duration_sec!r})."
    )


def _valid_duration(value: Optional[float]) -> bool:
    if value is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


def _size_mode_part_count(
    duration: float,
    original_byte_size: int,
    max_part_bytes: Optional[int],
    sample_rate: int,
    channel_count: int,
    bit_depth: int,
) -> int:
    frame_bytes = channel_count * bytes_per_sample(bit_depth)
    if max_part_bytes is None or max_part_bytes < WAV_HEADER_SIZE + 2 * frame_bytes:
        raise ValueError(f"max_part_bytes too small for a WAV part: {max_part_bytes}")
    estimated = estimate_wav_size(duration, sample_rate, channel_count, bit_depth)
    count = max(2, math.ceil(max(estimated, float(original_byte_size or 0)) / max_part_bytes))
    total_frames = math.ceil(duration * sample_rate)
    while WAV_HEADER_SIZE + (math.ceil(total_frames / count) + 1) * frame_bytes > max_part_bytes:
        count += 1
    logger.debug(
        "Size estimate: source=%.2f MB, re-encoded=%.2f MB, max=%.2f MB -> %d parts",
        (original_byte_size or 0) / BYTES_PER_MB,
        estimated / BYTES_PER_MB,
        max_part_bytes / BYTES_PER_MB,
        count,
    )
    return count


def split_audio(
    source: AudioSource,
    mode: Union[SplitMode, str],
    *,
    max_part_bytes: Optional[int] = None,
    part_count: Optional[int] = None,
    bit_depth: Optional[int] = None,
    mime_type: Optional[str] = None,
    base_name: Optional[str] = None,
    fallback_duration_sec: Optional[float] = None,
) -> List[AudioPart]:
    """Decode ``source`` and re-encode it as a list of WAV parts.

    Size mode defaults to 8-bit output to keep parts small, count mode to
    16-bit. Any part over ``max_part_bytes`` aborts the whole split.
    """
    mode = SplitMode.from_flag(mode) if isinstance(mode, str) else mode
    if isinstance(source, (str, Path)):
        path = Path(source).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Audio file '{path}' not found.")
        original_size = path.stat().st_size
        stem = base_name or path.stem
        source = path
    else:
        original_size = len(source)
        stem = base_name or "audio"
    depth = bit_depth or default_bit_depth(mode)

    buffer = decode_audio(source, mime_type)
    logger.info(
        "Splitting %s (%.2f MB, %.2fs, %d Hz, %d ch) into %d-bit WAV parts",
        stem,
        original_size / BYTES_PER_MB,
        buffer.duration_sec,
        buffer.sample_rate,
        buffer.channel_count,
        depth,
    )
    plan = plan_split(
        buffer.duration_sec,
        original_size,
        mode,
        max_part_bytes=max_part_bytes,
        part_count=part_count,
        sample_rate=buffer.sample_rate,
        channel_count=buffer.channel_count,
        bit_depth=depth,
        fallback_duration_sec=fallback_duration_sec,
    )

    parts: List[AudioPart] = []
    last = len(plan.boundaries) - 1
    for index, (start, end) in enumerate(plan.boundaries):
        # Whole-frame boundaries; the last part always ends on the final frame.
        start_frame = int(round(start * buffer.sample_rate))
        end_frame = buffer.frame_count if index == last else int(round(end * buffer.sample_rate))
        data = encode_wav(buffer, start_frame, end_frame, depth)
        if mode is SplitMode.SIZE and len(data) > max_part_bytes:
            raise SizeConstraintViolation(index, len(data), max_part_bytes)
        part = AudioPart(
            index=index,
            file_name=part_file_name(stem, index),
            data=data,
            byte_size=len(data),
            duration_sec=(end_frame - start_frame) / buffer.sample_rate,
            start_sec=start,
            end_sec=end,
        )
        logger.debug(
            "Part %d: %.2fs-%.2fs, %d bytes", part.part_number, start, end, part.byte_size
        )
        parts.append(part)
    return parts


def part_file_name(stem: str, index: int) -> str:
    return f"{stem}_part{index + 1}.wav"


def write_parts(parts: List[AudioPart], output_dir: Path) -> List[Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for part in parts:
        target = output_dir / part.file_name
        target.write_bytes(part.data)
        written.append(target)
    return written
