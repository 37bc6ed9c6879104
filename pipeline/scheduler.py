"""Staged media pipeline: split, transcribe, summarize, plus the visual branch."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from splitscribe.audio import AudioSource
from splitscribe.models import AudioPart, SimilarityGroup, SplitMode, TranscriptionItem, WorkItem
from splitscribe.splitter import mb_to_bytes, split_audio, write_parts
from vision.capture import CaptureSession
from vision.comparator import ImageComparator
from vision.selector import select_frames_for_analysis

from .orchestrator import (
    Backend,
    CancelToken,
    ProgressCallback,
    TranscriptionOrchestrator,
    format_transcriptions,
    status_counts,
)
from .summary import SummaryChainer, TextGenerator

logger = logging.getLogger(__name__)


@dataclass
class PipelineSettings:
    output_dir: Path
    split_mode: SplitMode = SplitMode.SIZE
    max_part_bytes: int = mb_to_bytes(25)
    part_count: int = 2
    bit_depth: Optional[int] = None
    concurrency: int = 1
    delay_seconds: float = 1.0
    transcription_prompt: Optional[str] = None
    summary_prompt: Optional[str] = None
    summarize: bool = True
    duplicate_detection: bool = True
    duplicate_threshold: float = 0.95
    max_analysis_images: int = 10


@dataclass
class PipelineResult:
    parts: List[AudioPart] = field(default_factory=list)
    part_paths: List[Path] = field(default_factory=list)
    items: List[TranscriptionItem] = field(default_factory=list)
    groups: List[SimilarityGroup] = field(default_factory=list)
    selected_frame_ids: List[str] = field(default_factory=list)
    visual_summary: Optional[str] = None
    summary: Optional[str] = None
    artifacts: List[Path] = field(default_factory=list)


class MediaPipeline:
    """One pipeline invocation. Builds a fresh orchestrator per batch."""

    def __init__(
        self,
        settings: PipelineSettings,
        backend: Backend,
        generate_text: Optional[TextGenerator] = None,
        *,
        vision_backend: Optional[Backend] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        sleep=None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.generate_text = generate_text
        self.vision_backend = vision_backend or backend
        self.on_progress = on_progress
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep
        self.output_dir = Path(settings.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _orchestrator(self, backend: Optional[Backend] = None) -> TranscriptionOrchestrator:
        return TranscriptionOrchestrator(
            backend or self.backend,
            concurrency=self.settings.concurrency,
            delay_seconds=self.settings.delay_seconds,
            sleep=self._sleep,
            on_progress=self.on_progress,
        )

    # Stage A -----------------------------------------------------------
    def split(self, source: AudioSource, *, mime_type: Optional[str] = None, base_name: Optional[str] = None) -> List[AudioPart]:
        parts = split_audio(
            source,
            self.settings.split_mode,
            max_part_bytes=self.settings.max_part_bytes,
            part_count=self.settings.part_count,
            bit_depth=self.settings.bit_depth,
            mime_type=mime_type,
            base_name=base_name,
        )
        logger.info("Stage A: produced %d part(s)", len(parts))
        return parts

    # Stage B -----------------------------------------------------------
    def transcribe(self, parts: Sequence[AudioPart]) -> List[TranscriptionItem]:
        if not parts:
            logger.warning("Stage B: nothing to transcribe")
            return []
        work = [WorkItem.from_part(part) for part in parts]
        items = self._orchestrator().run(work, self.cancel_token, prompt=self.settings.transcription_prompt)
        logger.info("Stage B: %s", ", ".join(f"{k}={v}" for k, v in status_counts(items).items() if v))
        return items

    # Visual branch -----------------------------------------------------
    def analyze_frames(self, session: CaptureSession, result: PipelineResult) -> str:
        chainer = SummaryChainer(self.generate_text, self._orchestrator(self.vision_backend))
        auto = session.auto_frames()
        uploaded = session.uploaded_frames()
        if self.settings.duplicate_detection:
            comparator = ImageComparator(self.settings.duplicate_threshold)
            groups = comparator.group_duplicates(auto)
        else:
            groups = [
                SimilarityGroup(representative_id=frame.id, member_ids=(frame.id,), timestamp_sec=frame.captured_at_sec)
                for frame in auto
            ]
        selected = select_frames_for_analysis(
            groups, self.settings.max_analysis_images, uploaded_ids=[frame.id for frame in uploaded]
        )
        estimate = session.cost_estimate(len(selected))
        if estimate.warning:
            logger.warning(estimate.warning)
        result.groups = groups
        result.selected_frame_ids = selected
        return chainer.summarize_frames(session.frames, selected, self.cancel_token)

    # Stage C -----------------------------------------------------------
    def summarize(self, items: Sequence[TranscriptionItem], visual_summary: Optional[str] = None) -> str:
        chainer = SummaryChainer(self.generate_text)
        return chainer.synthesize(items, visual_summary=visual_summary, format_prompt=self.settings.summary_prompt)

    def run_all(
        self,
        source: Optional[AudioSource] = None,
        *,
        session: Optional[CaptureSession] = None,
        mime_type: Optional[str] = None,
        base_name: Optional[str] = None,
        write_parts_to_disk: bool = True,
    ) -> PipelineResult:
        result = PipelineResult()
        if session is not None and session.frames and self.generate_text is None:
            logger.warning("Screen captures skipped: no text generator for the visual summary")
        elif session is not None and session.frames:
            result.visual_summary = self.analyze_frames(session, result)
            result.artifacts.append(self._write_text("visual_summary.md", result.visual_summary))
        if source is not None:
            result.parts = self.split(source, mime_type=mime_type, base_name=base_name)
            if write_parts_to_disk:
                result.part_paths = write_parts(result.parts, self.output_dir / "parts")
            result.items = self.transcribe(result.parts)
            result.artifacts.append(self._write_text("transcriptions.md", format_transcriptions(result.items)))
            result.artifacts.append(self._write_report(result.items))
            if self.settings.summarize and self.generate_text is None:
                logger.warning("Summary skipped: no text generator configured")
            elif self.settings.summarize:
                result.summary = self.summarize(result.items, result.visual_summary)
                result.artifacts.append(self._write_text("summary.md", result.summary))
        return result

    # Helpers -----------------------------------------------------------
    def _write_text(self, name: str, text: str) -> Path:
        target = self.output_dir / name
        target.write_text(text.strip() + "\n", encoding="utf-8")
        return target

    def _write_report(self, items: Sequence[TranscriptionItem]) -> Path:
        target = self.output_dir / "report.json"
        payload = {
            "summary": status_counts(items),
            "items": [item.to_dict() for item in items],
        }
        with target.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        return target
