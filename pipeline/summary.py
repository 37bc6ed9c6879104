"""Two-stage synthesis: describe each item, then fold the descriptions together."""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from splitscribe.models import CaptureFrame, TranscriptionItem, TranscriptionStatus, WorkItem

from .orchestrator import CancelToken, TranscriptionOrchestrator

logger = logging.getLogger(__name__)

TextGenerator = Callable[[str], str]

NO_TRANSCRIPTIONS_PLACEHOLDER = "[No completed transcriptions to summarize.]"
NO_VISUAL_PLACEHOLDER = "[No analyzable screen captures were available.]"

VISION_PROMPT = (
    "Look at this screen capture and briefly describe:\n"
    "1. The service or application shown (YouTube, Zoom, a browser, ...)\n"
    "2. The main content on screen (meeting, video, web page, presentation, ...)\n"
    "3. Notable elements (participant count, video title, key visible text)\n\n"
    "Keep it under 100 words and skip small print and technical detail."
)

VISUAL_SUMMARY_PROMPT = (
    "Below are descriptions of screens captured periodically during a recording. "
    "Combine them into a short account of the session's context and background.\n\n"
    "Screen descriptions:\n{descriptions}\n\n"
    "Requirements:\n"
    "- Extract context that helps understand the recording\n"
    "- Trace how the services, applications and content on screen changed\n"
    "- Highlight notable information or changes of situation\n"
    "- Keep it under 300 words"
)

SUMMARY_PROMPT = (
    "Organize the following transcription results into readable notes.\n\n"
    "Requirements:\n"
    "- Structure the content like meeting minutes\n"
    "- Make the key points explicit\n"
    "- Split into paragraphs that follow the flow of the conversation\n"
    "- Add headings where useful\n"
    "- Condense redundant phrasing\n\n"
    "Transcription results:\n{transcriptions}\n\n"
    "Summarize the content above."
)

BACKGROUND_BLOCK = "Background captured from the screen during the recording:\n{background}\n\n"


def format_recording_time(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


class SummaryChainer:
    """Stage 1 maps items to short texts through the orchestrator; stage 2
    folds every successful stage-1 text into a single ``generate_text`` call.
    Stage 2 is skipped with a placeholder when stage 1 produced nothing.
    """

    def __init__(
        self,
        generate_text: TextGenerator,
        orchestrator: Optional[TranscriptionOrchestrator] = None,
        *,
        vision_prompt: str = VISION_PROMPT,
    ) -> None:
        self.generate_text = generate_text
        self.orchestrator = orchestrator
        self.vision_prompt = vision_prompt

    # Stage 1 ---------------------------------------------------------------
    def describe_frames(
        self,
        frames: Sequence[CaptureFrame],
        selected_ids: Sequence[str],
        cancel_token: Optional[CancelToken] = None,
    ) -> List[TranscriptionItem]:
        """Describe the selected frames and record the outcome on each frame."""
        if self.orchestrator is None:
            raise RuntimeError("describe_frames requires an orchestrator.")
        by_id = {frame.id: frame for frame in frames}
        targets: List[CaptureFrame] = []
        for frame_id in selected_ids:
            frame = by_id.get(frame_id)
            if frame is None:
                logger.warning("Selected frame %s is not part of the session", frame_id)
                continue
            targets.append(frame)
        work = [
            WorkItem(file_name=frame.id, data=frame.image_bytes, mime_type=frame.mime_type, prompt=self.vision_prompt)
            for frame in targets
        ]
        results = self.orchestrator.run(work, cancel_token)
        for frame, result in zip(targets, results):
            if result.status is TranscriptionStatus.COMPLETED:
                frame.description = (result.result_text or "").strip()
                frame.error = None
            elif result.status is TranscriptionStatus.ERROR:
                frame.error = result.error_message or "Analysis failed"
        return results

    # Stage 2 ---------------------------------------------------------------
    def synthesize_visual(self, frames: Sequence[CaptureFrame]) -> str:
        valid = [frame for frame in frames if frame.description and not frame.error]
        if not valid:
            logger.info("No analyzed frames; skipping visual synthesis")
            return NO_VISUAL_PLACEHOLDER
        descriptions = "\n".join(
            f"{index}. {format_recording_time(frame.captured_at_sec)}: {frame.description}"
            for index, frame in enumerate(valid, start=1)
        )
        logger.info("Synthesizing visual context from %d frame(s)", len(valid))
        return self.generate_text(VISUAL_SUMMARY_PROMPT.format(descriptions=descriptions)).strip()

    def synthesize(
        self,
        items: Sequence[TranscriptionItem],
        visual_summary: Optional[str] = None,
        format_prompt: Optional[str] = None,
    ) -> str:
        completed = sorted(
            (
                item
                for item in items
                if item.status is TranscriptionStatus.COMPLETED and (item.result_text or "").strip()
            ),
            key=lambda item: item.part_index,
        )
        if not completed:
            logger.info("No completed transcriptions; skipping summary")
            return NO_TRANSCRIPTIONS_PLACEHOLDER
        combined = "\n\n---\n\n".join(f"## {item.file_name}\n\n{item.result_text}" for item in completed)
        if format_prompt and "{transcriptions}" in format_prompt:
            prompt = format_prompt.replace("{transcriptions}", combined)
        elif format_prompt:
            prompt = f"{format_prompt}\n\nTranscription results:\n{combined}"
        else:
            prompt = SUMMARY_PROMPT.format(transcriptions=combined)
        if visual_summary and visual_summary.strip() and visual_summary != NO_VISUAL_PLACEHOLDER:
            prompt = BACKGROUND_BLOCK.format(background=visual_summary.strip()) + prompt
        logger.info("Summarizing %d of %d part(s)", len(completed), len(items))
        return self.generate_text(prompt).strip()

    # Chains ----------------------------------------------------------------
    def summarize_frames(
        self,
        frames: Sequence[CaptureFrame],
        selected_ids: Sequence[str],
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        self.describe_frames(frames, selected_ids, cancel_token)
        selected = set(selected_ids)
        chosen = sorted((frame for frame in frames if frame.id in selected), key=lambda frame: frame.captured_at_sec)
        return self.synthesize_visual(chosen)
