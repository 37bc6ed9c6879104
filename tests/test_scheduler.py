import io
import json

import numpy as np
import pytest
import soundfile as sf
from PIL import Image

from pipeline.scheduler import MediaPipeline, PipelineSettings
from pipeline.summary import NO_TRANSCRIPTIONS_PLACEHOLDER
from splitscribe.models import SplitMode, TranscriptionStatus
from vision.capture import CaptureSession


class DummyBackend:
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def __call__(self, data, mime_type, prompt):
        self.calls.append(mime_type)
        if len(self.calls) in self.fail_on:
            raise RuntimeError("remote failure")
        if mime_type.startswith("image/"):
            return "A presentation slide"
        return f"spoken words {len(self.calls)}"


class DummyGenerator:
    def __init__(self):
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return f"generated {len(self.prompts)}"


@pytest.fixture
def recording(tmp_path):
    sample_rate = 8000
    samples = np.zeros(3 * sample_rate, dtype=np.float32)
    path = tmp_path / "meeting.wav"
    sf.write(str(path), samples, sample_rate, subtype="PCM_16")
    return path


def _png(color):
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _settings(tmp_path, **overrides):
    values = dict(
        output_dir=tmp_path / "out",
        split_mode=SplitMode.COUNT,
        part_count=3,
        delay_seconds=0,
    )
    values.update(overrides)
    return PipelineSettings(**values)


def test_pipeline_writes_all_artifacts(tmp_path, recording):
    backend = DummyBackend()
    generator = DummyGenerator()
    snapshots = []
    pipeline = MediaPipeline(_settings(tmp_path), backend, generator, on_progress=snapshots.append)

    result = pipeline.run_all(recording)

    out = tmp_path / "out"
    assert [path.name for path in result.part_paths] == [f"meeting_part{i}.wav" for i in (1, 2, 3)]
    assert all(path.exists() for path in result.part_paths)
    assert [item.status for item in result.items] == [TranscriptionStatus.COMPLETED] * 3
    assert result.summary == "generated 1"
    assert (out / "summary.md").read_text(encoding="utf-8") == "generated 1\n"
    assert "# Transcription results" in (out / "transcriptions.md").read_text(encoding="utf-8")
    report = json.loads((out / "report.json").read_text(encoding="utf-8"))
    assert report["summary"]["completed"] == 3
    assert [entry["part_number"] for entry in report["items"]] == [1, 2, 3]
    assert snapshots[-1].completed == 3


def test_failed_part_is_reported_and_summary_uses_the_rest(tmp_path, recording):
    backend = DummyBackend(fail_on={2})
    generator = DummyGenerator()
    pipeline = MediaPipeline(_settings(tmp_path), backend, generator)

    result = pipeline.run_all(recording, write_parts_to_disk=False)

    assert result.part_paths == []
    assert [item.status for item in result.items] == [
        TranscriptionStatus.COMPLETED,
        TranscriptionStatus.ERROR,
        TranscriptionStatus.COMPLETED,
    ]
    assert "remote failure" in (tmp_path / "out" / "transcriptions.md").read_text(encoding="utf-8")
    assert "meeting_part2.wav" not in generator.prompts[0]


def test_all_failed_skips_summary_call(tmp_path, recording):
    backend = DummyBackend(fail_on={1, 2, 3})
    generator = DummyGenerator()
    result = MediaPipeline(_settings(tmp_path), backend, generator).run_all(recording)
    assert result.summary == NO_TRANSCRIPTIONS_PLACEHOLDER
    assert generator.prompts == []


def test_summary_can_be_disabled(tmp_path, recording):
    generator = DummyGenerator()
    result = MediaPipeline(_settings(tmp_path, summarize=False), DummyBackend(), generator).run_all(recording)
    assert result.summary is None
    assert not (tmp_path / "out" / "summary.md").exists()


def test_frames_feed_background_into_summary(tmp_path, recording):
    session = CaptureSession(interval_sec=60)
    for index, color in enumerate([(0, 0, 0), (0, 0, 0), (255, 255, 255)]):
        session.add_frame(_png(color), index * 60.0, "image/png")
    session.upload(_png((255, 0, 0)), "image/png", captured_at_sec=10.0)

    backend = DummyBackend()
    generator = DummyGenerator()
    result = MediaPipeline(_settings(tmp_path), backend, generator).run_all(recording, session=session)

    assert len(result.groups) == 2
    assert result.selected_frame_ids == ["upload_001", "capture_001", "capture_003"]
    assert backend.calls.count("image/png") == 3
    assert result.visual_summary == "generated 1"
    assert generator.prompts[1].startswith("Background captured from the screen")
    assert (tmp_path / "out" / "visual_summary.md").exists()


def test_frames_only_run(tmp_path):
    session = CaptureSession()
    session.add_frame(_png((10, 10, 10)), 0.0, "image/png")
    generator = DummyGenerator()
    result = MediaPipeline(_settings(tmp_path), DummyBackend(), generator).run_all(session=session)
    assert result.items == []
    assert result.visual_summary == "generated 1"
    assert session.frames[0].description == "A presentation slide"


def test_without_generator_summary_and_frames_are_skipped(tmp_path, recording):
    session = CaptureSession()
    session.add_frame(_png((10, 10, 10)), 0.0, "image/png")
    backend = DummyBackend()

    result = MediaPipeline(_settings(tmp_path), backend).run_all(recording, session=session)

    assert result.summary is None
    assert result.visual_summary is None
    assert backend.calls == ["audio/wav"] * 3
    assert not (tmp_path / "out" / "summary.md").exists()


def test_frames_go_to_vision_backend(tmp_path, recording):
    session = CaptureSession()
    session.add_frame(_png((10, 10, 10)), 0.0, "image/png")
    audio_backend = DummyBackend()
    vision_backend = DummyBackend()

    MediaPipeline(
        _settings(tmp_path), audio_backend, DummyGenerator(), vision_backend=vision_backend
    ).run_all(recording, session=session)

    assert audio_backend.calls == ["audio/wav"] * 3
    assert vision_backend.calls == ["image/png"]
