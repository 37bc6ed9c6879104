"""Bounded-concurrency batch submission to a remote transcription endpoint."""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from splitscribe.models import (
    ALLOWED_TRANSITIONS,
    ProgressSnapshot,
    TranscriptionItem,
    TranscriptionStatus,
    WorkItem,
)

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 5

Backend = Callable[[bytes, str, Optional[str]], str]
ProgressCallback = Callable[[ProgressSnapshot], None]

# Worker -> orchestrator event kinds.
_STARTED = "started"
_COMPLETED = "completed"
_FAILED = "failed"
_CANCELLED = "cancelled"
_WORKER_DONE = "worker_done"


class CancelToken:
    """Cooperative cancellation flag shared by the caller and the workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))


class TranscriptionOrchestrator:
    """Run a batch of work items through ``backend`` with a small worker pool.

    Workers never touch item state. They report events on a queue which the
    thread calling :meth:`run` drains; that thread is the only writer and
    publishes a frozen :class:`ProgressSnapshot` after every transition.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        concurrency: int = 1,
        delay_seconds: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if not 1 <= int(concurrency) <= MAX_CONCURRENCY:
            raise ValueError(f"concurrency must be between 1 and {MAX_CONCURRENCY}, got {concurrency}")
        if delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {delay_seconds}")
        self.backend = backend
        self.concurrency = int(concurrency)
        self.delay_seconds = float(delay_seconds)
        self._sleep = sleep
        self._on_progress = on_progress
        self._snapshot = ProgressSnapshot(completed=0, total=0, status_text="idle", items=())

    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    def run(
        self,
        items: Sequence[WorkItem],
        cancel_token: Optional[CancelToken] = None,
        prompt: Optional[str] = None,
    ) -> List[TranscriptionItem]:
        """Submit every item and block until all of them reach a terminal state.

        Result ``i`` always describes input item ``i``.
        """
        token = cancel_token or CancelToken()
        states: List[TranscriptionItem] = [
            TranscriptionItem(part_index=index, file_name=item.file_name or f"Part {index + 1}")
            for index, item in enumerate(items)
        ]
        if not states:
            self._publish(states, set())
            return []

        work: "Queue[int]" = Queue()
        for index in range(len(items)):
            work.put(index)
        events: "Queue[Tuple]" = Queue()
        worker_count = min(self.concurrency, len(items))
        logger.info(
            "Submitting %d item(s) with %d worker(s), %.2fs delay per worker",
            len(items),
            worker_count,
            self.delay_seconds,
        )

        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(items, work, events, token, prompt),
                name=f"transcription-worker-{n}",
                daemon=True,
            )
            for n in range(worker_count)
        ]
        for thread in threads:
            thread.start()

        in_flight: set = set()
        finished_workers = 0
        try:
            self._publish(states, in_flight)
            while finished_workers < worker_count:
                event = events.get()
                kind = event[0]
                if kind == _WORKER_DONE:
                    finished_workers += 1
                    continue
                self._apply(states, in_flight, event)
                self._publish(states, in_flight)
        except BaseException:
            # Stop submitting, let in-flight calls return, then reap every worker.
            logger.warning("Batch aborted; waiting for %d worker(s) to stop", worker_count - finished_workers)
            token.cancel()
            while finished_workers < worker_count:
                if events.get()[0] == _WORKER_DONE:
                    finished_workers += 1
            raise
        finally:
            for thread in threads:
                thread.join()

        pending = [state.part_number for state in states if not state.status.is_terminal]
        if pending:
            raise RuntimeError(f"Items left in a non-terminal state: {pending}")
        if token.cancelled:
            cancelled = sum(1 for state in states if state.status is TranscriptionStatus.CANCELLED)
            logger.info("Batch cancelled: %d of %d item(s) not started", cancelled, len(states))
        return list(states)

    # Workers ---------------------------------------------------------------
    def _worker_loop(
        self,
        items: Sequence[WorkItem],
        work: "Queue[int]",
        events: "Queue[Tuple]",
        token: CancelToken,
        prompt: Optional[str],
    ) -> None:
        submitted = 0
        try:
            while True:
                try:
                    index = work.get_nowait()
                except Empty:
                    return
                if submitted and self.delay_seconds > 0 and not token.cancelled:
                    self._wait(token)
                if token.cancelled:
                    events.put((_CANCELLED, index))
                    continue
                events.put((_STARTED, index))
                item = items[index]
                submitted += 1
                try:
                    text = self.backend(item.data, item.mime_type, item.prompt or prompt)
                except Exception as exc:
                    events.put((_FAILED, index, _describe_error(exc)))
                    continue
                events.put((_COMPLETED, index, text))
        finally:
            events.put((_WORKER_DONE,))

    def _wait(self, token: CancelToken) -> None:
        if self._sleep is not None:
            self._sleep(self.delay_seconds)
        else:
            token.wait(self.delay_seconds)

    # Single writer ---------------------------------------------------------
    def _apply(self, states: List[TranscriptionItem], in_flight: set, event: Tuple) -> None:
        kind, index = event[0], event[1]
        current = states[index]
        if kind == _STARTED:
            updated = self._transition(current, TranscriptionStatus.PROCESSING)
            in_flight.add(index)
            logger.debug("Processing %s", current.file_name)
        elif kind == _COMPLETED:
            updated = self._transition(current, TranscriptionStatus.COMPLETED, result_text=event[2])
            in_flight.discard(index)
            logger.info("Completed %s", current.file_name)
        elif kind == _FAILED:
            updated = self._transition(current, TranscriptionStatus.ERROR, error_message=event[2])
            in_flight.discard(index)
            logger.warning("Failed %s: %s", current.file_name, event[2])
        elif kind == _CANCELLED:
            updated = self._transition(current, TranscriptionStatus.CANCELLED, error_message="Cancelled by user")
        else:
            raise ValueError(f"Unknown worker event {kind!r}")
        states[index] = updated

    @staticmethod
    def _transition(item: TranscriptionItem, status: TranscriptionStatus, **changes) -> TranscriptionItem:
        if status not in ALLOWED_TRANSITIONS[item.status]:
            raise RuntimeError(
                f"Illegal transition for {item.file_name}: {item.status.value} -> {status.value}"
            )
        return replace(item, status=status, **changes)

    def _publish(self, states: Sequence[TranscriptionItem], in_flight: set) -> None:
        completed = sum(1 for state in states if state.status.is_terminal)
        total = len(states)
        if in_flight:
            names = ", ".join(states[i].file_name for i in sorted(in_flight))
            status_text = f"Processing: {names} ({completed}/{total} done)"
        else:
            status_text = f"Done: {completed}/{total}"
        self._snapshot = ProgressSnapshot(
            completed=completed, total=total, status_text=status_text, items=tuple(states)
        )
        if self._on_progress is not None:
            self._on_progress(self._snapshot)


def _describe_error(exc: Exception) -> str:
    status = getattr(exc, "status_code", None)
    message = str(exc) or type(exc).__name__
    if status is not None and str(status) not in message:
        return f"HTTP {status}: {message}"
    return message


def format_transcriptions(items: Sequence[TranscriptionItem]) -> str:
    """Render one markdown section per part, errors inline."""
    lines = ["# Transcription results", ""]
    for item in sorted(items, key=lambda entry: entry.part_index):
        lines.append(f"## Part {item.part_number}: {item.file_name}")
        lines.append("")
        if item.status is TranscriptionStatus.COMPLETED:
            lines.append(item.result_text or "")
        elif item.status is TranscriptionStatus.ERROR:
            lines.append(f"Error: {item.error_message}")
        else:
            lines.append(f"[{item.status.value}]")
        lines.append("")
        lines.append("---")
        lines.append("")
    return "\n".join(lines)


def status_counts(items: Sequence[TranscriptionItem]) -> Dict[str, int]:
    counts: Dict[str, int] = {status.value: 0 for status in TranscriptionStatus}
    for item in items:
        counts[item.status.value] += 1
    return counts
