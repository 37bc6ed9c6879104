"""Near-duplicate detection for captured screen frames."""
from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
from PIL import Image

from splitscribe.models import CaptureFrame, SimilarityGroup

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_THRESHOLD = 0.95
DEFAULT_COMPARE_SIZE = 64
_MAX_PIXEL_DISTANCE = math.sqrt(3 * 255 * 255)

ImageInput = Union[bytes, bytearray, Image.Image]


class SimilarityComparisonError(ValueError):
    """An image could not be decoded for comparison."""


@dataclass(frozen=True)
class ImageSimilarity:
    similarity: float
    is_duplicate: bool


class ImageComparator:
    def __init__(self, duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD, compare_size: int = DEFAULT_COMPARE_SIZE):
        if compare_size < 1:
            raise ValueError(f"compare_size must be positive, got {compare_size}")
        self.compare_size = int(compare_size)
        self.duplicate_threshold = DEFAULT_DUPLICATE_THRESHOLD
        self.set_duplicate_threshold(duplicate_threshold)

    def set_duplicate_threshold(self, threshold: float) -> None:
        self.duplicate_threshold = max(0.0, min(1.0, float(threshold)))

    def compare(self, image_a: ImageInput, image_b: ImageInput) -> ImageSimilarity:
        """Similarity in [0, 1]; an undecodable image is never a duplicate."""
        try:
            pixels_a = self.downsample(image_a)
            pixels_b = self.downsample(image_b)
        except SimilarityComparisonError as exc:
            logger.warning("Image comparison failed: %s", exc)
            return ImageSimilarity(similarity=0.0, is_duplicate=False)
        similarity = pixel_similarity(pixels_a, pixels_b)
        return ImageSimilarity(similarity=similarity, is_duplicate=similarity >= self.duplicate_threshold)

    def downsample(self, image: ImageInput) -> np.ndarray:
        """Fit ``image`` into a black square canvas, keeping its aspect ratio."""
        try:
            if isinstance(image, Image.Image):
                source = image.convert("RGB")
            else:
                with Image.open(io.BytesIO(bytes(image))) as opened:
                    source = opened.convert("RGB")
        except (OSError, ValueError) as exc:
            raise SimilarityComparisonError(f"cannot decode image: {exc}") from exc

        size = self.compare_size
        width, height = source.size
        if width <= 0 or height <= 0:
            raise SimilarityComparisonError("image has no pixels")
        aspect = width / height
        draw_width, draw_height = float(size), float(size)
        offset_x, offset_y = 0.0, 0.0
        if aspect > 1:
            draw_height = size / aspect
            offset_y = (size - draw_height) / 2
        else:
            draw_width = size * aspect
            offset_x = (size - draw_width) / 2

        canvas = Image.new("RGB", (size, size), (0, 0, 0))
        resized = source.resize(
            (max(1, round(draw_width)), max(1, round(draw_height))), Image.Resampling.BILINEAR
        )
        canvas.paste(resized, (int(offset_x), int(offset_y)))
        return np.asarray(canvas, dtype=np.float64)

    def group_duplicates(self, frames: Sequence[CaptureFrame]) -> List[SimilarityGroup]:
        """Greedy single-pass clustering in input order.

        Each unprocessed frame opens a group and absorbs every later unprocessed
        duplicate of it. O(n^2) comparisons; frame counts are capped by the
        capture budget.
        """
        cache: Dict[str, Optional[np.ndarray]] = {}

        def pixels_for(frame: CaptureFrame) -> Optional[np.ndarray]:
            if frame.id not in cache:
                try:
                    cache[frame.id] = self.downsample(frame.image_bytes)
                except SimilarityComparisonError as exc:
                    logger.warning("Frame %s kept ungrouped: %s", frame.id, exc)
                    cache[frame.id] = None
            return cache[frame.id]

        groups: List[SimilarityGroup] = []
        processed: set = set()
        for i, current in enumerate(frames):
            if current.id in processed:
                continue
            processed.add(current.id)
            members = [current.id]
            current_pixels = pixels_for(current)
            if current_pixels is not None:
                for candidate in frames[i + 1 :]:
                    if candidate.id in processed:
                        continue
                    candidate_pixels = pixels_for(candidate)
                    if candidate_pixels is None:
                        continue
                    similarity = pixel_similarity(current_pixels, candidate_pixels)
                    if similarity >= self.duplicate_threshold:
                        members.append(candidate.id)
                        processed.add(candidate.id)
                        logger.debug(
                            "Duplicate: %s ~ %s (%.1f%%)", current.id, candidate.id, similarity * 100
                        )
            groups.append(
                SimilarityGroup(
                    representative_id=current.id,
                    member_ids=tuple(members),
                    timestamp_sec=current.captured_at_sec,
                )
            )

        duplicates = sum(len(group.member_ids) - 1 for group in groups)
        logger.info("Grouped %d frame(s) into %d group(s), %d duplicate(s)", len(frames), len(groups), duplicates)
        return groups


def pixel_similarity(pixels_a: np.ndarray, pixels_b: np.ndarray) -> float:
    """1 minus the mean per-pixel RGB Euclidean distance, normalized."""
    if pixels_a.shape != pixels_b.shape:
        return 0.0
    distances = np.sqrt(np.sum((pixels_a - pixels_b) ** 2, axis=-1))
    pixel_count = distances.size
    if pixel_count == 0:
        return 0.0
    normalized = float(distances.sum()) / (pixel_count * _MAX_PIXEL_DISTANCE)
    return max(0.0, 1.0 - normalized)
