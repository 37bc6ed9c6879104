from unittest.mock import MagicMock

import pytest

from pipeline.orchestrator import TranscriptionOrchestrator
from pipeline.summary import (
    NO_TRANSCRIPTIONS_PLACEHOLDER,
    NO_VISUAL_PLACEHOLDER,
    SummaryChainer,
    format_recording_time,
)
from splitscribe.models import CaptureFrame, TranscriptionItem, TranscriptionStatus


def _item(index, status, text=None):
    return TranscriptionItem(index, f"rec_part{index + 1}.wav", status, result_text=text)


def test_no_completed_items_skips_remote_call():
    generate = MagicMock()
    items = [_item(0, TranscriptionStatus.ERROR), _item(1, TranscriptionStatus.COMPLETED, "   ")]
    assert SummaryChainer(generate).synthesize(items) == NO_TRANSCRIPTIONS_PLACEHOLDER
    generate.assert_not_called()


def test_summary_uses_completed_items_in_part_order():
    generate = MagicMock(return_value=" notes ")
    items = [
        _item(1, TranscriptionStatus.COMPLETED, "second"),
        _item(2, TranscriptionStatus.ERROR),
        _item(0, TranscriptionStatus.COMPLETED, "first"),
    ]
    assert SummaryChainer(generate).synthesize(items) == "notes"
    prompt = generate.call_args.args[0]
    assert prompt.index("first") < prompt.index("second")
    assert "rec_part3.wav" not in prompt


def test_custom_prompt_placeholder_is_substituted():
    generate = MagicMock(return_value="ok")
    items = [_item(0, TranscriptionStatus.COMPLETED, "body text")]
    SummaryChainer(generate).synthesize(items, format_prompt="Bullet points please:\n{transcriptions}")
    prompt = generate.call_args.args[0]
    assert prompt.startswith("Bullet points please:")
    assert "body text" in prompt
    assert "{transcriptions}" not in prompt


def test_visual_summary_is_prepended_as_background():
    generate = MagicMock(return_value="ok")
    items = [_item(0, TranscriptionStatus.COMPLETED, "talk")]
    SummaryChainer(generate).synthesize(items, visual_summary="A Zoom call with slides")
    assert generate.call_args.args[0].startswith("Background captured from the screen")


def test_visual_placeholder_is_not_used_as_background():
    generate = MagicMock(return_value="ok")
    items = [_item(0, TranscriptionStatus.COMPLETED, "talk")]
    SummaryChainer(generate).synthesize(items, visual_summary=NO_VISUAL_PLACEHOLDER)
    assert "Background" not in generate.call_args.args[0]


def test_frames_described_then_synthesized():
    frames = [
        CaptureFrame(id="capture_002", captured_at_sec=125.0, image_bytes=b"b", mime_type="image/png"),
        CaptureFrame(id="capture_001", captured_at_sec=5.0, image_bytes=b"a"),
        CaptureFrame(id="capture_003", captured_at_sec=300.0, image_bytes=b"c"),
    ]

    def backend(data, mime_type, prompt):
        if data == b"b":
            raise RuntimeError("vision failed")
        return f"screen {data.decode()}"

    generate = MagicMock(return_value="context")
    orchestrator = TranscriptionOrchestrator(backend, delay_seconds=0)
    chainer = SummaryChainer(generate, orchestrator)

    result = chainer.summarize_frames(frames, ["capture_001", "capture_002"])

    assert result == "context"
    assert frames[1].description == "screen a"
    assert frames[0].error == "vision failed"
    assert frames[2].description is None and not frames[2].analyzed
    prompt = generate.call_args.args[0]
    assert "00:05: screen a" in prompt
    assert "screen b" not in prompt


def test_visual_synthesis_skipped_without_descriptions():
    generate = MagicMock()
    frame = CaptureFrame(id="capture_001", captured_at_sec=0.0, image_bytes=b"x", error="boom")
    assert SummaryChainer(generate).synthesize_visual([frame]) == NO_VISUAL_PLACEHOLDER
    generate.assert_not_called()


def test_describe_frames_requires_orchestrator():
    with pytest.raises(RuntimeError):
        SummaryChainer(MagicMock()).describe_frames([], [])


def test_format_recording_time():
    assert format_recording_time(0) == "00:00"
    assert format_recording_time(125.9) == "02:05"
