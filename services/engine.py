"""Conversion engine: one supervised FFmpeg process per job.

The engine launches the encoder, reads its ``-progress pipe:1`` stream,
turns ``out_time`` markers into a percentage of the expected duration and
decides the outcome from the exit status and the produced file. On failure
the full encoder output is kept in a report inside the job's work directory.
"""

import logging
import platform
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from config.constants import CANCEL_GRACE_SECONDS
from core.errors import Cancelled, ConversionError, EngineRuntimeFailure, EngineSpawnError, JobTimeout
from utils.formatting import parse_ffmpeg_time

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]
PrepareHook = Callable[[Path], List[str]]

REPORT_NAME = "ffmpeg.log"


class EngineState(Enum):
    IDLE = "idle"
    LAUNCHED = "launched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressTracker:
    """Turns ``key=value`` progress lines into a non-decreasing percentage."""

    def __init__(self, expected_duration: Optional[float]):
        self.expected_duration = expected_duration
        self.out_time = 0.0
        self.percent = 0.0
        self.finished = False

    def feed(self, line: str) -> Optional[float]:
        """Consume one line; return the new percentage when it went up."""
        line = line.strip()
        if not line or "=" not in line:
            return None
        key, value = line.split("=", 1)
        value = value.strip()
        if key in ("out_time_us", "out_time_ms"):
            # both keys carry microseconds
            try:
                self.out_time = max(self.out_time, int(value) / 1_000_000)
            except ValueError:
                return None
        elif key == "out_time":
            parsed = parse_ffmpeg_time(value)
            if parsed is None:
                return None
            self.out_time = max(self.out_time, parsed)
        elif key == "progress" and value == "end":
            self.finished = True
            if self.expected_duration:
                self.out_time = max(self.out_time, self.expected_duration)
        else:
            return None

        if not self.expected_duration or self.expected_duration <= 0:
            return None
        pct = min(self.out_time / self.expected_duration * 100.0, 100.0)
        if pct <= self.percent:
            return None
        self.percent = pct
        return pct


class ConversionEngine:
    def __init__(
        self,
        job_id: str,
        command: List[str],
        output: Path,
        expected_duration: Optional[float],
        work_root: Path,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
        grace: float = CANCEL_GRACE_SECONDS,
        source: Optional[Path] = None,
        prepare: Optional[PrepareHook] = None,
    ):
        self.job_id = job_id
        self.command = list(command)
        self.output = Path(output)
        self.work_root = Path(work_root)
        self.on_progress = on_progress
        self.timeout = timeout
        self.grace = grace
        self.source = source
        self.prepare = prepare
        self.tracker = ProgressTracker(expected_duration)
        self.state = EngineState.IDLE
        self.work_dir: Optional[Path] = None

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._cancel_event = threading.Event()
        self._done_event = threading.Event()
        self._timed_out = False
        self._last_activity = time.monotonic()
        self._stderr_lines: List[str] = []

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()
        with self._lock:
            proc = self._proc
        if proc is not None:
            logger.info(f"[{self.job_id[:8]}] Terminating encoder")
            self._terminate(proc)

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
        except OSError as exc:
            logger.debug(f"terminate failed: {exc}")
        killer = threading.Timer(self.grace, self._kill_if_alive, args=(proc,))
        killer.daemon = True
        killer.start()

    def _kill_if_alive(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            logger.warning(f"[{self.job_id[:8]}] Encoder ignored terminate, killing it")
            try:
                proc.kill()
            except OSError as exc:
                logger.debug(f"kill failed: {exc}")

    def run(self) -> Path:
        """Drive the process to an outcome; return the output path or raise."""
        self.work_root.mkdir(parents=True, exist_ok=True)
        self.work_dir = Path(tempfile.mkdtemp(prefix=f"webpconv-{self.job_id[:8]}-", dir=self.work_root))
        self.state = EngineState.LAUNCHED

        if self.cancelled:
            return self._fail_cancelled()

        if self.prepare is not None:
            # runs in the work dir before launch and may replace the command
            try:
                self.command = list(self.prepare(self.work_dir))
            except ConversionError as exc:
                self.state = EngineState.FAILED
                exc.log_path = self._write_report(None, exc.message)
                raise
            if self.cancelled:
                return self._fail_cancelled()

        try:
            proc = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=str(self.work_dir),
            )
        except OSError as exc:
            self.state = EngineState.FAILED
            log_path = self._write_report(None, f"Failed to execute FFmpeg: {exc}")
            raise EngineSpawnError(f"Failed to execute FFmpeg: {exc}", log_path) from exc

        with self._lock:
            self._proc = proc
        if self.cancelled:
            self.cancel()

        err_thread = threading.Thread(target=self._consume_stderr, args=(proc.stderr,), daemon=True)
        err_thread.start()
        watchdog = None
        if self.timeout:
            watchdog = threading.Thread(target=self._watch, args=(proc,), daemon=True)
            watchdog.start()

        self.state = EngineState.STREAMING
        assert proc.stdout is not None
        for line in proc.stdout:
            self._last_activity = time.monotonic()
            pct = self.tracker.feed(line)
            if pct is not None and self.on_progress is not None:
                self.on_progress(self.job_id, pct)

        rc = proc.wait()
        self._done_event.set()
        err_thread.join(timeout=1.0)
        if watchdog is not None:
            watchdog.join(timeout=1.0)
        with self._lock:
            self._proc = None

        if self.cancelled:
            return self._fail_cancelled()
        if self._timed_out:
            msg = f"Encoder made no progress for {self.timeout:g}s and was stopped"
            raise JobTimeout(msg, self._fail(rc, msg))
        if rc != 0:
            msg = f"FFmpeg exited with code {rc}"
            raise EngineRuntimeFailure(msg, self._fail(rc, msg))
        if not self.output.exists() or self.output.stat().st_size == 0:
            msg = "FFmpeg finished but the output file is missing or empty"
            raise EngineRuntimeFailure(msg, self._fail(rc, msg))

        self.state = EngineState.COMPLETED
        if self.tracker.percent < 100.0 and self.on_progress is not None:
            self.tracker.percent = 100.0
            self.on_progress(self.job_id, 100.0)
        shutil.rmtree(self.work_dir, ignore_errors=True)
        return self.output

    def _watch(self, proc: subprocess.Popen) -> None:
        while not self._done_event.is_set():
            idle = time.monotonic() - self._last_activity
            remaining = self.timeout - idle
            if remaining <= 0:
                if proc.poll() is None:
                    logger.warning(f"[{self.job_id[:8]}] No progress for {self.timeout:g}s, stopping encoder")
                    self._timed_out = True
                    self._terminate(proc)
                return
            self._done_event.wait(remaining)

    def _consume_stderr(self, pipe) -> None:
        for line in pipe:
            line = line.rstrip("\n")
            self._stderr_lines.append(line)
            low = line.lower()
            if "error" in low or "invalid" in low or "failed" in low:
                logger.debug(f"[{self.job_id[:8]}] {line.strip()}")

    def _remove_partial_output(self) -> None:
        try:
            self.output.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug(f"Could not remove partial output {self.output}: {exc}")

    def _fail_cancelled(self):
        self.state = EngineState.FAILED
        self._remove_partial_output()
        if self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
        raise Cancelled("Conversion cancelled by user")

    def _fail(self, rc: Optional[int], message: str) -> Optional[Path]:
        self.state = EngineState.FAILED
        self._remove_partial_output()
        return self._write_report(rc, message)

    def _write_report(self, rc: Optional[int], message: str) -> Optional[Path]:
        if self.work_dir is None:
            return None
        ffmpeg = Path(self.command[0]) if self.command else None
        lines = [
            "WebP conversion failure report",
            f"Job: {self.job_id}",
            f"Input: {self.source or '-'}",
            f"Output: {self.output}",
            f"Arch: {platform.machine()} ({platform.system()})",
        ]
        if ffmpeg is not None:
            lines.append(f"ffmpeg: {ffmpeg} (exists: {ffmpeg.exists() or shutil.which(str(ffmpeg)) is not None})")
        lines.append(f"Command: {shlex.join(self.command)}")
        lines.append(f"Exit code: {rc if rc is not None else '-'}")
        lines.append(f"Progress: {self.tracker.percent:.1f}%")
        lines.append(f"Error:\n{message}")
        lines.append("FFmpeg output:")
        lines.extend(self._stderr_lines)
        log_path = self.work_dir / REPORT_NAME
        try:
            log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.error(f"Could not write diagnostic log {log_path}: {exc}")
            return None
        return log_path
