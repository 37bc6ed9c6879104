"""PCM decoding and canonical WAV encoding.

Decoding goes through libsndfile (``soundfile``). Containers libsndfile cannot
read (mp4, m4a, webm, ...) are first transcoded to a temporary PCM WAV with the
ffmpeg CLI, then with MoviePy as a last resort.
"""
from __future__ import annotations

import io
import logging
import shutil
import struct
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import soundfile as sf

try:
    from moviepy import AudioFileClip, VideoFileClip
except ImportError:  # moviepy < 2.0 keeps the clips under moviepy.editor
    from moviepy.editor import AudioFileClip, VideoFileClip  # type: ignore

from .models import MediaBuffer

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44
SUPPORTED_BIT_DEPTHS = (8, 16)

# Audio-only containers; anything else is opened as a video when falling back to MoviePy.
AUDIO_EXTENSIONS = {
    ".wav",
    ".mp3",
    ".flac",
    ".m4a",
    ".aac",
    ".ogg",
    ".oga",
    ".opus",
    ".wma",
}

_MIME_SUFFIXES = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/flac": ".flac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/aac": ".aac",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/webm": ".webm",
    "video/webm": ".webm",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
}

_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")

AudioSource = Union[str, Path, bytes, bytearray, memoryview]


class DecodeError(RuntimeError):
    """Raised when a container cannot be decoded into PCM."""


@dataclass(frozen=True)
class WavHeader:
    riff_size: int
    channel_count: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int

    @property
    def frame_count(self) -> int:
        return self.data_size // self.block_align if self.block_align else 0


# Decoding --------------------------------------------------------------------


def decode_audio(source: AudioSource, mime_type: Optional[str] = None) -> MediaBuffer:
    """Decode a path or an in-memory blob into a :class:`MediaBuffer`."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return _decode_bytes(bytes(source), mime_type)
    path = Path(source).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Audio file '{path}' not found.")
    return _decode_path(path)


def _decode_bytes(data: bytes, mime_type: Optional[str]) -> MediaBuffer:
    if not data:
        raise DecodeError("Cannot decode an empty audio blob.")
    try:
        return _read_pcm(io.BytesIO(data), "<memory>")
    except DecodeError:
        raise
    except RuntimeError as exc:
        logger.debug("libsndfile could not read in-memory blob (%s); transcoding", exc)
    with tempfile.TemporaryDirectory(prefix="splitscribe-") as tmp:
        staged = Path(tmp) / f"source{suffix_for_mime(mime_type)}"
        staged.write_bytes(data)
        return _decode_path(staged)


def _decode_path(path: Path) -> MediaBuffer:
    try:
        return _read_pcm(path, path.name)
    except DecodeError:
        raise
    except RuntimeError as exc:
        logger.debug("libsndfile could not read %s (%s); transcoding", path.name, exc)
    with tempfile.TemporaryDirectory(prefix="splitscribe-") as tmp:
        target = Path(tmp) / "decoded.wav"
        if not extract_to_wav(path, target):
            raise DecodeError(
                f"Failed to decode {path.name}: unsupported or corrupt container. "
                "Install MoviePy or ensure ffmpeg is available in PATH."
            )
        try:
            return _read_pcm(target, path.name)
        except RuntimeError as exc:
            raise DecodeError(f"Failed to decode {path.name}: {exc}") from exc


def _read_pcm(source, label: str) -> MediaBuffer:
    data, sample_rate = sf.read(source, dtype="float32", always_2d=True)
    if data.size == 0 or sample_rate <= 0:
        raise DecodeError(f"{label} contains no audio frames.")
    samples = np.ascontiguousarray(data.T)
    logger.debug(
        "Decoded %s: %d Hz, %d channel(s), %d frames",
        label,
        sample_rate,
        samples.shape[0],
        samples.shape[1],
    )
    return MediaBuffer(sample_rate=int(sample_rate), samples=samples)


def suffix_for_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return ".bin"
    normalized = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_SUFFIXES.get(normalized, ".bin")


def run_ffmpeg_cli(input_path: Path, output_path: Path) -> bool:
    """Convert ``input_path`` to 16-bit PCM WAV with the ffmpeg CLI."""
    executable = shutil.which("ffmpeg")
    if not executable:
        return False
    if output_path.exists():
        try:
            output_path.unlink()
        except OSError:
            return False
    cmd = [
        executable,
        "-y",
        "-i",
        str(input_path),
        "-vn",
        "-acodec",
        "pcm_s16le",
        str(output_path),
    ]
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False)
    if result.returncode != 0:
        logger.debug("ffmpeg failed for %s: %s", input_path.name, result.stderr.decode(errors="replace")[-400:])
    return result.returncode == 0 and output_path.exists()


def extract_to_wav(source_path: Path, output_path: Path) -> bool:
    """Transcode any container to PCM WAV, trying ffmpeg first and MoviePy second."""
    if run_ffmpeg_cli(source_path, output_path):
        return True
    ext = source_path.suffix.lower()
    try:
        if ext in AUDIO_EXTENSIONS:
            with AudioFileClip(str(source_path)) as audio:
                audio.write_audiofile(str(output_path), codec="pcm_s16le", logger=None)
        else:
            video = VideoFileClip(str(source_path))
            try:
                if video.audio is None:
                    logger.warning("%s has no audio track.", source_path.name)
                    return False
                video.audio.write_audiofile(str(output_path), codec="pcm_s16le", logger=None)
            finally:
                video.close()
    except Exception as exc:
        logger.warning("MoviePy failed to export audio from %s: %s", source_path.name, exc)
        return False
    return output_path.exists()


# Encoding --------------------------------------------------------------------


def wav_header(frame_count: int, channel_count: int, sample_rate: int, bit_depth: int) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for little-endian integer PCM."""
    _check_bit_depth(bit_depth)
    bytes_per_sample = bit_depth // 8
    block_align = channel_count * bytes_per_sample
    data_size = frame_count * block_align
    return _HEADER_STRUCT.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channel_count,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bit_depth,
        b"data",
        data_size,
    )


def encode_wav(buffer: MediaBuffer, start_frame: int, end_frame: int, bit_depth: int = 16) -> bytes:
    """Encode frames ``[start_frame, end_frame)`` of ``buffer`` as a WAV file.

    Frames past the end of the buffer are written as silence so the part length
    always matches the requested range.
    """
    _check_bit_depth(bit_depth)
    if start_frame < 0:
        raise ValueError(f"start_frame must be >= 0, got {start_frame}")
    length = max(0, end_frame - start_frame)
    segment = np.zeros((buffer.channel_count, length), dtype=np.float32)
    available_end = min(end_frame, buffer.frame_count)
    if available_end > start_frame:
        segment[:, : available_end - start_frame] = buffer.samples[:, start_frame:available_end]
    header = wav_header(length, buffer.channel_count, buffer.sample_rate, bit_depth)
    return header + pcm_bytes(segment, bit_depth)


def pcm_bytes(samples: np.ndarray, bit_depth: int) -> bytes:
    """Interleave ``(channels, frames)`` float samples into integer PCM bytes."""
    _check_bit_depth(bit_depth)
    clipped = np.clip(np.nan_to_num(samples.astype(np.float64)), -1.0, 1.0)
    interleaved = clipped.T.reshape(-1)
    if bit_depth == 8:
        # Unsigned, midpoint 128; round half up.
        values = np.floor((interleaved + 1.0) * 127.5 + 0.5)
        return np.clip(values, 0, 255).astype(np.uint8).tobytes()
    scaled = np.where(interleaved < 0, interleaved * 32768.0, interleaved * 32767.0)
    return np.clip(np.trunc(scaled), -32768, 32767).astype("<i2").tobytes()


def read_wav_header(data: bytes) -> WavHeader:
    """Parse a canonical 44-byte header produced by :func:`wav_header`."""
    if len(data) < WAV_HEADER_SIZE:
        raise DecodeError(f"WAV data too short: {len(data)} bytes")
    (
        riff,
        riff_size,
        wave,
        fmt,
        fmt_size,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits,
        data_tag,
        data_size,
    ) = _HEADER_STRUCT.unpack_from(data, 0)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_tag != b"data":
        raise DecodeError("Not a canonical RIFF/WAVE header.")
    if fmt_size != 16 or audio_format != 1:
        raise DecodeError(f"Unsupported WAV format chunk (size={fmt_size}, format={audio_format}).")
    return WavHeader(
        riff_size=riff_size,
        channel_count=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits,
        data_size=data_size,
    )


def bytes_per_sample(bit_depth: int) -> int:
    _check_bit_depth(bit_depth)
    return bit_depth // 8


def _check_bit_depth(bit_depth: int) -> None:
    if bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise ValueError(f"Unsupported bit depth {bit_depth}; expected one of {SUPPORTED_BIT_DEPTHS}.")
