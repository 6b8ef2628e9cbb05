import argparse
import logging
import queue
import sys
from dataclasses import replace
from pathlib import Path
from typing import Iterable, List, Optional

from config.constants import (
    APP_TITLE,
    MAX_CONCURRENT,
    OUT_FORMATS,
    SETTINGS_STORE,
)
from config.paths import find_ffmpeg, find_ffprobe
from core.models import BatchDoneEvent, JobStatus, LogEvent, ProgressEvent, QualityPreset, TerminalEvent
from core.presets import clamp_static_duration, load_batch_settings
from services.ffmpeg_service import FfmpegService
from services.scheduler import BatchScheduler
from utils.files import media_type
from utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webp2mp4",
        description="Convert animated and still WebP images to H.264 MP4/MOV with FFmpeg.",
        epilog="Without input paths the desktop window is opened.",
    )
    parser.add_argument("inputs", nargs="*", metavar="PATH", help="WebP files or folders to convert")
    parser.add_argument("--output-dir", "-o", type=Path, help="write results here instead of beside each source")
    parser.add_argument("--format", "-f", choices=OUT_FORMATS, help="container format")
    parser.add_argument("--name", "-n", metavar="TEMPLATE", help="file name template, e.g. {name}_{counter}")
    parser.add_argument("--quality", "-q", choices=[p.value for p in QualityPreset], help="quality preset")
    parser.add_argument("--fps", type=int, help="output frame rate, e.g. 24, 30 or 60")
    parser.add_argument("--duration", type=float, help="length in seconds of videos made from still images")
    parser.add_argument("--background", metavar="#RRGGBB", help="fill colour behind transparent pixels")
    parser.add_argument("--jobs", "-j", type=int, default=MAX_CONCURRENT, help="conversions to run at once")
    parser.add_argument("--timeout", type=float, help="stop a conversion that makes no progress for this many seconds")
    parser.add_argument("--ffmpeg", help="path to the ffmpeg executable")
    parser.add_argument("--log-dir", type=Path, help="directory for the application log")
    parser.add_argument("--verbose", "-v", action="store_true", help="show debug messages on the console")
    return parser


def collect_inputs(paths: Iterable[str]) -> List[Path]:
    found: List[Path] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            found.extend(sorted(p for p in path.rglob("*") if p.is_file() and media_type(p)))
        elif media_type(path):
            found.append(path)
        else:
            logger.warning(f"Skipping unsupported file: {path}")
    return found


def _settings_from_args(args: argparse.Namespace):
    settings = load_batch_settings(SETTINGS_STORE)
    overrides = {}
    if args.output_dir is not None:
        overrides["output_dir"] = args.output_dir.expanduser()
    if args.format:
        overrides["output_format"] = args.format
    if args.name:
        overrides["name_template"] = args.name
    if args.quality:
        overrides["default_quality"] = QualityPreset.parse(args.quality)
    if args.fps is not None:
        overrides["default_fps"] = args.fps
    if args.duration is not None:
        overrides["static_duration"] = clamp_static_duration(args.duration)
    if args.background:
        overrides["background"] = args.background
    if args.timeout:
        overrides["job_timeout"] = args.timeout
    return replace(settings, **overrides)


def run_headless(args: argparse.Namespace) -> int:
    ffmpeg_path = args.ffmpeg or find_ffmpeg()
    if not ffmpeg_path:
        logger.error("FFmpeg not found. Pass --ffmpeg or add it to PATH.")
        return 2
    inputs = collect_inputs(args.inputs)
    if not inputs:
        logger.error("No supported input files.")
        return 2

    events: "queue.Queue[object]" = queue.Queue()
    scheduler = BatchScheduler(
        FfmpegService(ffmpeg_path, find_ffprobe(ffmpeg_path)),
        events,
        settings=_settings_from_args(args),
        max_concurrent=max(1, args.jobs),
    )
    jobs = scheduler.enqueue(inputs)
    names = {job.id: job.name for job in jobs}
    if not scheduler.start_all():
        return 2

    failed = 0
    while True:
        event = events.get()
        if isinstance(event, LogEvent):
            logger.debug(f"{event.level}: {event.message}")
        elif isinstance(event, ProgressEvent):
            logger.debug(f"{names.get(event.job_id, event.job_id)}: {event.progress:.0f}%")
        elif isinstance(event, TerminalEvent):
            name = names.get(event.job_id, event.job_id)
            if event.succeeded:
                print(f"OK    {name} -> {event.output_path}")
            else:
                failed += 1
                detail = event.failure
                hint = f" (log: {detail.log_path})" if detail and detail.log_path else ""
                print(f"FAIL  {name}: {detail.message if detail else 'unknown error'}{hint}")
        elif isinstance(event, BatchDoneEvent):
            break

    total = len(scheduler.jobs())
    done = sum(1 for job in scheduler.jobs() if job.status is JobStatus.SUCCEEDED)
    print(f"{done}/{total} converted")
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log_file = setup_logging(args.log_dir, args.verbose)
    logger.info(f"{APP_TITLE} starting")
    if log_file:
        logger.info(f"Logging to {log_file}")

    if args.inputs:
        try:
            return run_headless(args)
        except KeyboardInterrupt:
            logger.warning("Interrupted")
            return 130

    from ui.qt_app import run_app

    return run_app(log_file)


if __name__ == "__main__":
    sys.exit(main())
