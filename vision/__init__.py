"""Screen capture deduplication and budgeted frame selection."""

from .capture import CaptureSession, load_frames_from_directory
from .comparator import ImageComparator, ImageSimilarity, SimilarityComparisonError
from .selector import estimate_capture_cost, select_frames_for_analysis

__all__ = [
    "CaptureSession",
    "ImageComparator",
    "ImageSimilarity",
    "SimilarityComparisonError",
    "estimate_capture_cost",
    "load_frames_from_directory",
    "select_frames_for_analysis",
]
