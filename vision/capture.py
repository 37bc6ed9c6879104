"""Frame bookkeeping for a recording session.

Frames arrive as already-encoded image bytes, either from an interval timer,
a manual trigger or a user upload. Only timer/manual captures count against
``max_captures``.
"""
from __future__ import annotations

import logging
import mimetypes
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from splitscribe.models import CaptureFrame, CostEstimate

from .selector import estimate_capture_cost

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_INTERVAL = 60
DEFAULT_MAX_CAPTURES = 100
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif"}


class CaptureSession:
    def __init__(
        self,
        interval_sec: float = DEFAULT_CAPTURE_INTERVAL,
        max_captures: int = DEFAULT_MAX_CAPTURES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.interval_sec = float(interval_sec)
        self.max_captures = max(0, int(max_captures))
        self._clock = clock
        self._frames: List[CaptureFrame] = []
        self._started_at: Optional[float] = None
        self._last_capture_at: Optional[float] = None
        self._auto_count = 0
        self._upload_count = 0

    @property
    def is_capturing(self) -> bool:
        return self._started_at is not None

    @property
    def frames(self) -> Tuple[CaptureFrame, ...]:
        return tuple(self._frames)

    def start(self) -> None:
        self._started_at = self._clock()
        self._last_capture_at = None
        logger.info("Capture started (every %.0fs, max %d)", self.interval_sec, self.max_captures)

    def stop(self) -> None:
        self._started_at = None
        logger.info("Capture stopped with %d frame(s)", len(self._frames))

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, self._clock() - self._started_at)

    def next_capture_in(self) -> float:
        if self._started_at is None:
            return 0.0
        if self._last_capture_at is None:
            return 0.0
        return max(0.0, self._last_capture_at + self.interval_sec - self._clock())

    def tick(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> Optional[CaptureFrame]:
        """Timer hook: capture when the interval elapsed and the cap allows it."""
        if not self.is_capturing or self.next_capture_in() > 0:
            return None
        return self._capture(image_bytes, mime_type)

    def capture_now(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> Optional[CaptureFrame]:
        if not self.is_capturing:
            return None
        return self._capture(image_bytes, mime_type)

    def add_frame(self, image_bytes: bytes, captured_at_sec: float, mime_type: str = "image/jpeg") -> Optional[CaptureFrame]:
        """Register an auto capture with an explicit session timestamp."""
        if self._auto_count >= self.max_captures:
            logger.warning("Capture limit of %d reached; frame dropped", self.max_captures)
            return None
        self._auto_count += 1
        frame = CaptureFrame(
            id=f"capture_{self._auto_count:03d}",
            captured_at_sec=float(captured_at_sec),
            image_bytes=image_bytes,
            mime_type=mime_type,
        )
        self._frames.append(frame)
        return frame

    def upload(self, image_bytes: bytes, mime_type: str = "image/jpeg", captured_at_sec: Optional[float] = None) -> CaptureFrame:
        self._upload_count += 1
        frame = CaptureFrame(
            id=f"upload_{self._upload_count:03d}",
            captured_at_sec=self.elapsed() if captured_at_sec is None else float(captured_at_sec),
            image_bytes=image_bytes,
            mime_type=mime_type,
            uploaded=True,
        )
        self._frames.append(frame)
        logger.info("Uploaded image added as %s", frame.id)
        return frame

    def _capture(self, image_bytes: bytes, mime_type: str) -> Optional[CaptureFrame]:
        frame = self.add_frame(image_bytes, self.elapsed(), mime_type)
        if frame is not None:
            self._last_capture_at = self._clock()
        return frame

    def auto_frames(self) -> List[CaptureFrame]:
        return [frame for frame in self._frames if not frame.uploaded]

    def uploaded_frames(self) -> List[CaptureFrame]:
        return [frame for frame in self._frames if frame.uploaded]

    def pending_frames(self) -> List[CaptureFrame]:
        return [frame for frame in self._frames if not frame.analyzed]

    def find(self, frame_id: str) -> Optional[CaptureFrame]:
        for frame in self._frames:
            if frame.id == frame_id:
                return frame
        return None

    def clear(self) -> None:
        self._frames.clear()
        self._auto_count = 0
        self._upload_count = 0
        self._last_capture_at = None

    def cost_estimate(self, image_count: Optional[int] = None) -> CostEstimate:
        return estimate_capture_cost(len(self._frames) if image_count is None else image_count)


def load_frames_from_directory(
    session: CaptureSession,
    directory: Path,
    uploads: Sequence[Path] = (),
) -> List[CaptureFrame]:
    """Fill ``session`` from image files, spaced ``interval_sec`` apart in name order."""
    directory = Path(directory)
    files = sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
    if not files and not uploads:
        logger.warning("No images found in %s", directory)
    loaded: List[CaptureFrame] = []
    for position, path in enumerate(files):
        frame = session.add_frame(path.read_bytes(), position * session.interval_sec, _guess_mime(path))
        if frame is not None:
            loaded.append(frame)
    for path in uploads:
        loaded.append(session.upload(Path(path).read_bytes(), _guess_mime(Path(path)), captured_at_sec=0.0))
    return loaded


def _guess_mime(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "image/jpeg"
