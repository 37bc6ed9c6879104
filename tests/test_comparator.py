import io

import pytest
from PIL import Image

from splitscribe.models import CaptureFrame, SimilarityGroup
from vision.comparator import ImageComparator
from vision.selector import select_frames_for_analysis

COLORS = [
    (255, 0, 0),
    (10, 200, 30),
    (12, 198, 30),
    (10, 201, 32),
    (0, 0, 255),
    (255, 255, 0),
    (200, 100, 50),
    (202, 100, 50),
    (255, 0, 255),
    (0, 255, 255),
    (255, 255, 255),
    (0, 0, 0),
]


def _png(color, size=(64, 64)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def _frames(colors):
    return [
        CaptureFrame(id=f"capture_{i + 1:03d}", captured_at_sec=i * 60.0, image_bytes=_png(color))
        for i, color in enumerate(colors)
    ]


def test_image_is_identical_to_itself():
    image = _png((12, 34, 56))
    result = ImageComparator().compare(image, image)
    assert result.similarity == pytest.approx(1.0)
    assert result.is_duplicate


def test_opposite_colors_are_not_duplicates():
    result = ImageComparator().compare(_png((0, 0, 0)), _png((255, 255, 255)))
    assert result.similarity == pytest.approx(0.0)
    assert not result.is_duplicate


def test_aspect_ratio_is_letterboxed():
    wide = Image.new("RGB", (128, 32), (255, 255, 255))
    pixels = ImageComparator(compare_size=64).downsample(wide)
    assert pixels.shape == (64, 64, 3)
    assert pixels[0, 0].tolist() == [0.0, 0.0, 0.0]
    assert pixels[32, 32].tolist() == [255.0, 255.0, 255.0]


def test_undecodable_image_fails_open():
    result = ImageComparator().compare(b"not an image", _png((1, 2, 3)))
    assert result.similarity == 0.0
    assert not result.is_duplicate


def test_threshold_is_clamped():
    comparator = ImageComparator()
    comparator.set_duplicate_threshold(1.7)
    assert comparator.duplicate_threshold == 1.0
    comparator.set_duplicate_threshold(-0.2)
    assert comparator.duplicate_threshold == 0.0


def test_twelve_frames_with_two_duplicate_runs():
    frames = _frames(COLORS)
    groups = ImageComparator(0.95).group_duplicates(frames)

    assert len(groups) == 9
    members = [member for group in groups for member in group.member_ids]
    assert sorted(members) == sorted(frame.id for frame in frames)
    by_rep = {group.representative_id: group.member_ids for group in groups}
    assert by_rep["capture_002"] == ("capture_002", "capture_003", "capture_004")
    assert by_rep["capture_007"] == ("capture_007", "capture_008")

    selected = select_frames_for_analysis(groups, max_budget=10)
    assert selected == [group.representative_id for group in groups]
    assert "capture_003" not in selected


def test_undecodable_frame_gets_its_own_group():
    frames = _frames([(5, 5, 5), (5, 5, 5)])
    frames.insert(1, CaptureFrame(id="broken", captured_at_sec=30.0, image_bytes=b"junk"))
    groups = ImageComparator().group_duplicates(frames)
    assert [group.member_ids for group in groups] == [("capture_001", "capture_002"), ("broken",)]


def test_group_timestamp_is_representative_time():
    groups = ImageComparator().group_duplicates(_frames([(9, 9, 9), (9, 9, 9)]))
    assert groups == [SimilarityGroup("capture_001", ("capture_001", "capture_002"), 0.0)]
