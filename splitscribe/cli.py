import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from pipeline.orchestrator import CancelToken, format_transcriptions
from pipeline.scheduler import MediaPipeline, PipelineSettings
from vision.capture import CaptureSession, load_frames_from_directory

from .config import AppConfig, get_default_config_path
from .gemini_client import GeminiClient, GeminiSettings
from .local_transcriber import BackendMode, LocalTranscriber, LocalWhisperSettings, resolve_backend_mode
from .models import ProgressSnapshot, SplitMode
from .splitter import mb_to_bytes, split_audio, write_parts

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    """Construct the CLI entry point with subcommands and shared options."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, help="Path to config.json (user profile by default).")
    common.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...).")
    common.add_argument("--quiet", action="store_true", help="Suppress progress output.")
    common.add_argument("-o", "--output-dir", type=Path, help="Destination for parts and reports (config fallback).")

    parser = argparse.ArgumentParser(
        prog="splitscribe",
        description="Split recordings into bounded WAV parts, transcribe them and summarize the results.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    split_parser = subparsers.add_parser("split", parents=[common], help="Split an audio/video file into WAV parts.")
    _add_split_arguments(split_parser)

    transcribe_parser = subparsers.add_parser(
        "transcribe", parents=[common], help="Split, transcribe every part and summarize."
    )
    _add_split_arguments(transcribe_parser)
    _add_remote_arguments(transcribe_parser)
    transcribe_parser.add_argument("--frames", type=Path, help="Directory of screen captures to add as context.")
    transcribe_parser.add_argument(
        "--upload", type=Path, action="append", default=[], help="Image that must be analyzed (repeatable)."
    )
    transcribe_parser.add_argument(
        "--backend",
        choices=[mode.value for mode in BackendMode],
        help="Transcription backend; auto uses Gemini when an API key is set, local Whisper otherwise.",
    )
    transcribe_parser.add_argument("--local-model", help="faster-whisper model name or path (local backend).")
    transcribe_parser.add_argument("--language", help="Spoken language code for the local backend (auto-detect by default).")
    transcribe_parser.add_argument("--prompt", help="Custom transcription prompt.")
    transcribe_parser.add_argument("--summary-prompt", help="Custom summary prompt; {transcriptions} is substituted.")
    transcribe_parser.add_argument(
        "--summary", action=argparse.BooleanOptionalAction, default=None, help="Run the summary stage."
    )

    frames_parser = subparsers.add_parser(
        "frames", parents=[common], help="Group, sample and describe screen captures."
    )
    frames_parser.add_argument("input", type=Path, help="Directory with captured images.")
    frames_parser.add_argument(
        "--upload", type=Path, action="append", default=[], help="Image that must be analyzed (repeatable)."
    )
    frames_parser.add_argument("--threshold", type=float, help="Duplicate similarity threshold (0-1).")
    frames_parser.add_argument("--budget", type=int, help="Maximum number of frames sent for analysis.")
    _add_remote_arguments(frames_parser)
    return parser


def _add_split_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", type=Path, help="Path to the audio or video file.")
    parser.add_argument("--mode", choices=[mode.value for mode in SplitMode], help="Split by size or by count.")
    parser.add_argument("--max-size", type=float, help="Maximum part size in MB (size mode).")
    parser.add_argument("--count", type=int, help="Number of parts (count mode).")
    parser.add_argument("--bit-depth", type=int, choices=[8, 16], help="Output PCM bit depth.")


def _add_remote_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--api-key", help="Gemini API key (config or GEMINI_API_KEY by default).")
    parser.add_argument("--model", help="Gemini model identifier.")
    parser.add_argument("--concurrency", type=int, help="Parallel requests (1-5).")
    parser.add_argument("--delay", type=float, help="Delay between requests per worker, in seconds.")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    config = AppConfig(Path(args.config).expanduser() if args.config else get_default_config_path())
    if config.load_warning:
        logger.warning(config.load_warning)
    reporter = _ConsoleReporter(quiet=bool(args.quiet))
    try:
        if args.command == "split":
            return _run_split(args, config, reporter)
        if args.command == "transcribe":
            return _run_transcribe(args, config, reporter)
        if args.command == "frames":
            return _run_frames(args, config, reporter)
    except FileNotFoundError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    except (RuntimeError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted by user.", file=sys.stderr)
        return 130
    parser.error(f"Unknown command {args.command}")
    return 2


def _split_options(args: argparse.Namespace, config: AppConfig) -> dict:
    mode = SplitMode.from_flag(args.mode or str(config.get("split_mode") or "size"))
    max_size_mb = args.max_size if args.max_size is not None else config.get("max_part_size_mb")
    count = args.count if args.count is not None else config.get("part_count")
    bit_depth = args.bit_depth
    if bit_depth is None:
        bit_depth = config.get("size_bit_depth") if mode is SplitMode.SIZE else config.get("count_bit_depth")
    return {
        "mode": mode,
        "max_part_bytes": mb_to_bytes(max_size_mb),
        "part_count": count,
        "bit_depth": bit_depth,
    }


def _output_dir(args: argparse.Namespace, config: AppConfig) -> Path:
    target = Path(args.output_dir) if args.output_dir else Path(str(config.get("output_dir")))
    target = target.expanduser().resolve()
    target.mkdir(parents=True, exist_ok=True)
    return target


def _run_split(args: argparse.Namespace, config: AppConfig, reporter: "_ConsoleReporter") -> int:
    options = _split_options(args, config)
    parts = split_audio(
        args.input,
        options["mode"],
        max_part_bytes=options["max_part_bytes"],
        part_count=options["part_count"],
        bit_depth=options["bit_depth"],
    )
    paths = write_parts(parts, _output_dir(args, config))
    for part, path in zip(parts, paths):
        reporter.line(f"{path} ({part.byte_size / (1024 * 1024):.2f} MB, {part.duration_sec:.1f}s)")
    return 0


def _api_key(args: argparse.Namespace, config: AppConfig) -> str:
    return args.api_key or config.get("gemini_api_key")


def _build_client(args: argparse.Namespace, config: AppConfig) -> GeminiClient:
    api_key = _api_key(args, config)
    if not api_key:
        raise SystemExit("[ERROR] A Gemini API key is required (--api-key, config or GEMINI_API_KEY).")
    settings = GeminiSettings(
        api_key=api_key,
        model=args.model or str(config.get("gemini_model")),
        base_url=str(config.get("gemini_base_url")),
        timeout=config.get("request_timeout"),
        max_attempts=config.get("max_attempts"),
    )
    return GeminiClient(settings)


def _pipeline_settings(args: argparse.Namespace, config: AppConfig, output_dir: Path) -> PipelineSettings:
    options = _split_options(args, config) if hasattr(args, "mode") else {}
    delay = args.delay if args.delay is not None else config.get("request_delay_ms") / 1000.0
    summarize = getattr(args, "summary", None)
    threshold = getattr(args, "threshold", None)
    budget = getattr(args, "budget", None)
    settings = PipelineSettings(
        output_dir=output_dir,
        concurrency=args.concurrency or config.get("concurrency"),
        delay_seconds=delay,
        transcription_prompt=getattr(args, "prompt", None) or config.get("transcription_prompt") or None,
        summary_prompt=getattr(args, "summary_prompt", None) or config.get("summary_prompt") or None,
        summarize=config.get("summarize") if summarize is None else bool(summarize),
        duplicate_detection=config.get("duplicate_detection"),
        duplicate_threshold=config.get("duplicate_threshold") if threshold is None else threshold,
        max_analysis_images=config.get("max_analysis_images") if budget is None else budget,
    )
    if options:
        settings.split_mode = options["mode"]
        settings.max_part_bytes = options["max_part_bytes"]
        settings.part_count = options["part_count"]
        settings.bit_depth = options["bit_depth"]
    return settings


def _load_session(config: AppConfig, directory: Optional[Path], uploads: List[Path]) -> Optional[CaptureSession]:
    if directory is None and not uploads:
        return None
    session = CaptureSession(
        interval_sec=config.get("capture_interval"),
        max_captures=config.get("max_captures"),
    )
    if directory is not None:
        load_frames_from_directory(session, directory, uploads)
    else:
        for path in uploads:
            session.upload(Path(path).read_bytes(), captured_at_sec=0.0)
    return session


def _build_local_transcriber(args: argparse.Namespace, config: AppConfig) -> LocalTranscriber:
    settings = LocalWhisperSettings.from_dict(
        {
            "model": args.local_model or config.get("local_model"),
            "device": config.get("local_device"),
            "compute_type": config.get("local_compute_type"),
            "language": args.language or config.get("local_language"),
            "vad": config.get("local_vad"),
            "allow_download": config.get("local_allow_download"),
        }
    )
    return LocalTranscriber(settings)


def _run_transcribe(args: argparse.Namespace, config: AppConfig, reporter: "_ConsoleReporter") -> int:
    requested = BackendMode.from_flag(args.backend or str(config.get("transcription_backend") or "auto"))
    api_key = _api_key(args, config)
    mode = resolve_backend_mode(requested, api_key)
    client = _build_client(args, config) if mode is BackendMode.GEMINI or api_key else None
    if mode is BackendMode.LOCAL:
        backend = _build_local_transcriber(args, config).transcribe
    else:
        backend = client.transcribe
    logger.info("Transcription backend: %s (requested %s)", mode.value, requested.value)

    output_dir = _output_dir(args, config)
    settings = _pipeline_settings(args, config, output_dir)
    token = CancelToken()
    pipeline = MediaPipeline(
        settings,
        backend,
        client.generate_text if client else None,
        vision_backend=client.transcribe if client else None,
        on_progress=reporter.progress,
        cancel_token=token,
    )
    session = _load_session(config, args.frames, args.upload)
    with _cancel_on_sigint(token, reporter):
        result = pipeline.run_all(args.input, session=session)
    if not args.quiet:
        print(format_transcriptions(result.items))
        if result.summary:
            print(result.summary)
    for path in result.artifacts:
        reporter.line(f"Saved {path}")
    return 0


def _run_frames(args: argparse.Namespace, config: AppConfig, reporter: "_ConsoleReporter") -> int:
    if not args.input.is_dir():
        raise FileNotFoundError(f"Directory '{args.input}' not found.")
    client = _build_client(args, config)
    output_dir = _output_dir(args, config)
    settings = _pipeline_settings(args, config, output_dir)
    token = CancelToken()
    pipeline = MediaPipeline(
        settings, client.transcribe, client.generate_text, on_progress=reporter.progress, cancel_token=token
    )
    session = _load_session(config, args.input, args.upload)
    with _cancel_on_sigint(token, reporter):
        result = pipeline.run_all(session=session)
    reporter.line(
        f"{len(session.frames)} frame(s), {len(result.groups)} group(s), {len(result.selected_frame_ids)} analyzed."
    )
    for frame in session.frames:
        if frame.description:
            reporter.line(f"- {frame.id}: {frame.description}")
        elif frame.error:
            reporter.line(f"- {frame.id}: [error] {frame.error}")
    if result.visual_summary and not args.quiet:
        print(result.visual_summary)
    return 0


class _cancel_on_sigint:
    """First Ctrl-C requests cooperative cancellation, the second one interrupts."""

    def __init__(self, token: CancelToken, reporter: "_ConsoleReporter"):
        self.token = token
        self.reporter = reporter
        self._previous = None

    def _handle(self, signum, frame):
        if self.token.cancelled:
            raise KeyboardInterrupt
        self.token.cancel()
        self.reporter.line("Cancelling: waiting for in-flight requests to finish (Ctrl-C again to abort).")

    def __enter__(self):
        self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, exc_type, exc, tb):
        signal.signal(signal.SIGINT, self._previous)
        return False


class _ConsoleReporter:
    """Mirrors progress snapshots to stdout unless quiet."""

    def __init__(self, quiet: bool):
        self.quiet = quiet
        self._last_status = ""

    def line(self, message: str) -> None:
        if self.quiet:
            return
        print(message)

    def progress(self, snapshot: ProgressSnapshot) -> None:
        if self.quiet or snapshot.status_text == self._last_status:
            return
        self._last_status = snapshot.status_text
        print(f"[{snapshot.completed}/{snapshot.total}] {snapshot.status_text}")
