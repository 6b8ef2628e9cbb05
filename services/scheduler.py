"""Batch scheduler: a bounded pool of workers draining a FIFO of jobs.

Every job runs probe -> output path -> command -> engine on a worker
thread. State changes are applied under one lock and published on the
event queue, so a UI only ever reads snapshots and events.
"""

import logging
import threading
import time
from pathlib import Path
from queue import Empty, Queue
from typing import Callable, Dict, Iterable, List, Optional, Set

from config.constants import COUNTER_WIDTH, MAX_CONCURRENT
from config.paths import default_jobs_root
from core.errors import Cancelled, ConversionError
from core.models import (
    BatchDoneEvent,
    BatchSettings,
    FailureDetail,
    FailureReason,
    Job,
    JobOptions,
    JobStatus,
    LogEvent,
    ProgressEvent,
    TerminalEvent,
)
from services.engine import ConversionEngine
from services.ffmpeg_service import EncodeInvocation, FfmpegService, build_invocation
from services.frames import extract_frames
from services.prober import FormatProber
from utils.files import resolve_output_path

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., ConversionEngine]

CANCEL_MESSAGE = "Conversion cancelled by user"


class _Run:
    """One dispatch of a job. A cancelled run can outlive its job's Running state."""

    __slots__ = ("job_id", "engine", "output")

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.engine: Optional[ConversionEngine] = None
        self.output: Optional[Path] = None


class BatchScheduler:
    def __init__(
        self,
        ffmpeg: Optional[FfmpegService] = None,
        event_queue: Optional[Queue] = None,
        settings: Optional[BatchSettings] = None,
        max_concurrent: int = MAX_CONCURRENT,
        prober=None,
        engine_factory: Optional[EngineFactory] = None,
        work_root: Optional[Path] = None,
        counter_width: int = COUNTER_WIDTH,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.ffmpeg = ffmpeg or FfmpegService(None, None)
        self.queue: Queue = event_queue if event_queue is not None else Queue()
        self.max_concurrent = max_concurrent
        self.prober = prober or FormatProber(self.ffmpeg)
        self.engine_factory: EngineFactory = engine_factory or ConversionEngine
        self.work_root = Path(work_root) if work_root else default_jobs_root()
        self.counter_width = counter_width

        self._settings = settings or BatchSettings()
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._sequence = 0
        self._pending: Queue = Queue()
        self._runs: Dict[str, _Run] = {}
        self._live: Set[_Run] = set()
        self._draining: Set[_Run] = set()
        self._active_workers = 0
        self._running_batch = False
        self._stop_event = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    # ---------- events ----------
    def _emit(self, event) -> None:
        self.queue.put(event)

    def _log(self, level: str, msg: str, job_id: Optional[str] = None) -> None:
        self._emit(LogEvent(level, msg, job_id))

    # ---------- settings ----------
    @property
    def settings(self) -> BatchSettings:
        with self._lock:
            return self._settings

    def update_batch_settings(self, settings: BatchSettings) -> None:
        """Applies to jobs dispatched from now on; running jobs keep theirs."""
        with self._lock:
            self._settings = settings

    def update_job_options(self, job_id: str, options: JobOptions) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is JobStatus.RUNNING:
                return False
            job.options = options
            return True

    # ---------- queue management ----------
    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def submit_job(self, path: Path, options: Optional[JobOptions] = None) -> Optional[Job]:
        """Add one file; returns None when the path is already in the list."""
        source = Path(path).expanduser().absolute()
        with self._lock:
            if any(job.source == source for job in self._jobs.values()):
                return None
            job = Job(
                source=source,
                sequence=self._next_sequence(),
                options=options or self._settings.default_options(),
            )
            self._jobs[job.id] = job
            if self._running_batch and not self._stop_event.is_set():
                self._admit_locked([job.id])
            return job.snapshot()

    def enqueue(self, paths: Iterable[Path], options: Optional[JobOptions] = None) -> List[Job]:
        added: List[Job] = []
        for path in paths:
            job = self.submit_job(path, options)
            if job is not None:
                added.append(job)
        if added:
            self._log("INFO", f"Added {len(added)} file(s) to the queue")
        return added

    def retry(self, job_id: str) -> bool:
        """Re-queue one Failed job at the back of the FIFO."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.FAILED:
                return False
            self._reset_for_retry_locked(job)
            if self._running_batch and not self._stop_event.is_set():
                self._admit_locked([job.id])
            return True

    def _reset_for_retry_locked(self, job: Job) -> None:
        job.status = JobStatus.QUEUED
        job.progress = 0.0
        job.failure = None
        job.output_path = None
        job.dispatched_at = None
        job.sequence = self._next_sequence()

    def remove(self, job_id: str) -> bool:
        engine = None
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.status is JobStatus.RUNNING:
                engine = self._cancel_running_locked(job)
            del self._jobs[job_id]
        if engine is not None:
            engine.cancel()
        return True

    def cancel(self, job_id: str) -> bool:
        engine = None
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            if job.status is JobStatus.RUNNING:
                engine = self._cancel_running_locked(job)
            else:
                job.status = JobStatus.FAILED
                job.failure = FailureDetail(FailureReason.CANCELLED, CANCEL_MESSAGE)
                self._emit(TerminalEvent(job.id, job.status, None, job.failure))
        if engine is not None:
            engine.cancel()
        return True

    def _cancel_running_locked(self, job: Job) -> Optional[ConversionEngine]:
        job.status = JobStatus.FAILED
        job.failure = FailureDetail(FailureReason.CANCELLED, CANCEL_MESSAGE)
        run = self._runs.get(job.id)
        if run is not None:
            self._draining.add(run)
        self._emit(TerminalEvent(job.id, job.status, None, job.failure))
        self._log("WARN", f"Cancelled: {job.name}", job.id)
        # the worker keeps waiting on the dying process; its slot goes to a new worker
        self._spawn_workers_locked()
        return run.engine if run is not None else None

    def clear_completed(self) -> int:
        with self._lock:
            done = [job_id for job_id, job in self._jobs.items() if job.status is JobStatus.SUCCEEDED]
            for job_id in done:
                del self._jobs[job_id]
        return len(done)

    # ---------- inspection ----------
    def jobs(self) -> List[Job]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            statuses = [job.status for job in self._jobs.values()]
        return {
            "total": len(statuses),
            "queued": statuses.count(JobStatus.QUEUED),
            "running": statuses.count(JobStatus.RUNNING),
            "succeeded": statuses.count(JobStatus.SUCCEEDED),
            "failed": statuses.count(JobStatus.FAILED),
        }

    def is_running(self) -> bool:
        with self._lock:
            return self._running_batch

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    # ---------- batch control ----------
    def start_all(self) -> bool:
        """Admit every Queued and Failed job; no-op while a batch is running."""
        with self._lock:
            if self._running_batch:
                return False
            for job in sorted(self._jobs.values(), key=lambda j: j.sequence):
                if job.status is JobStatus.FAILED:
                    self._reset_for_retry_locked(job)
            ready = sorted(
                (job for job in self._jobs.values() if job.status is JobStatus.QUEUED),
                key=lambda j: j.sequence,
            )
            if not ready:
                self._log("WARN", "Queue is empty.")
                return False
            self._stop_event.clear()
            self._running_batch = True
            self._idle.clear()
            self._log("INFO", f"Starting {len(ready)} job(s), up to {self.max_concurrent} at a time")
            self._admit_locked([job.id for job in ready])
            return True

    def stop(self) -> None:
        """Stop admitting jobs; running conversions are left to finish."""
        with self._lock:
            if not self._running_batch:
                return
            self._stop_event.set()
            while True:
                try:
                    self._pending.get_nowait()
                except Empty:
                    break
        self._log("WARN", "Stopping after the running conversions finish.")

    def _admit_locked(self, job_ids: List[str]) -> None:
        for job_id in job_ids:
            self._pending.put(job_id)
        self._spawn_workers_locked()

    def _spawn_workers_locked(self) -> None:
        if not self._running_batch or self._stop_event.is_set():
            return
        # workers still waiting on a cancelled process do not hold a slot
        running = sum(1 for job in self._jobs.values() if job.status is JobStatus.RUNNING)
        wanted = min(self.max_concurrent, running + self._pending.qsize())
        while self._active_workers - len(self._draining) < wanted:
            self._active_workers += 1
            threading.Thread(target=self._worker_loop, daemon=True).start()

    def _next_job_locked(self) -> Optional[str]:
        if self._stop_event.is_set():
            return None
        if self._active_workers - len(self._draining) > self.max_concurrent:
            return None
        while True:
            try:
                job_id = self._pending.get_nowait()
            except Empty:
                return None
            job = self._jobs.get(job_id)
            if job is not None and job.status is JobStatus.QUEUED:
                return job_id

    def _worker_loop(self) -> None:
        while True:
            with self._lock:
                job_id = self._next_job_locked()
                if job_id is None:
                    self._retire_worker_locked()
                    return
                job, settings, run = self._dispatch_locked(job_id)
            self._process(job, settings, run)

    def _retire_worker_locked(self) -> None:
        self._active_workers -= 1
        if self._active_workers > 0:
            return
        stopped = self._stop_event.is_set()
        self._running_batch = False
        self._log("WARN" if stopped else "OK", "Stopped by user." if stopped else "Batch finished.")
        self._emit(BatchDoneEvent(stopped))
        self._idle.set()

    def _dispatch_locked(self, job_id: str):
        job = self._jobs[job_id]
        job.status = JobStatus.RUNNING
        job.progress = 0.0
        job.failure = None
        job.output_path = None
        job.dispatched_at = time.time()
        run = _Run(job_id)
        self._runs[job_id] = run
        self._live.add(run)
        return job.snapshot(), self._settings, run

    # ---------- per-job pipeline ----------
    def _process(self, job: Job, settings: BatchSettings, run: _Run) -> None:
        try:
            probe = self.prober.probe(job.source)
            with self._lock:
                output = resolve_output_path(
                    job.source,
                    job.sequence,
                    settings,
                    job.dispatched_at or time.time(),
                    self.counter_width,
                    taken={live.output for live in self._live if live.output is not None},
                )
                run.output = output
            invocation = build_invocation(job.source, probe, job.options, settings, output)
            ffmpeg_path = self.ffmpeg.ffmpeg_path or "ffmpeg"
            self._log("INFO", f"→ {job.name} ==> {output.name}", job.id)
            engine = self.engine_factory(
                job_id=job.id,
                command=invocation.command(ffmpeg_path),
                output=output,
                expected_duration=invocation.expected_duration,
                work_root=self.work_root,
                on_progress=lambda _job_id, pct: self._on_progress(run, pct),
                timeout=settings.job_timeout,
                source=job.source,
                prepare=self._frame_preparer(invocation, ffmpeg_path) if probe.is_animated else None,
            )
            with self._lock:
                if not self._is_current_locked(run):
                    raise Cancelled(CANCEL_MESSAGE)
                run.engine = engine
            result = engine.run()
        except ConversionError as exc:
            self._finish(run, failure=FailureDetail(exc.reason, exc.message, exc.log_path))
        except Exception as exc:
            logger.exception(f"Unexpected error while converting {job.source}")
            self._finish(run, failure=FailureDetail(FailureReason.RUNTIME, f"Unexpected error: {exc}"))
        else:
            self._finish(run, output=result)

    @staticmethod
    def _frame_preparer(invocation: EncodeInvocation, ffmpeg_path: str):
        def prepare(work_dir: Path) -> List[str]:
            return invocation.with_frames(extract_frames(invocation.source, work_dir)).command(ffmpeg_path)

        return prepare

    def _is_current_locked(self, run: _Run) -> bool:
        job = self._jobs.get(run.job_id)
        return job is not None and job.status is JobStatus.RUNNING and self._runs.get(run.job_id) is run

    def _discard_output(self, output: Path) -> None:
        try:
            output.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not remove output of cancelled job {output}: {exc}")

    def _on_progress(self, run: _Run, pct: float) -> None:
        with self._lock:
            if not self._is_current_locked(run):
                return
            job = self._jobs[run.job_id]
            pct = min(max(pct, 0.0), 100.0)
            if pct <= job.progress:
                return
            job.progress = pct
            self._emit(ProgressEvent(job.id, pct))

    def _finish(
        self,
        run: _Run,
        output: Optional[Path] = None,
        failure: Optional[FailureDetail] = None,
    ) -> None:
        job_id = run.job_id
        with self._lock:
            self._live.discard(run)
            self._draining.discard(run)
            current = self._is_current_locked(run)
            if self._runs.get(job_id) is run:
                del self._runs[job_id]
            if not current:
                # cancelled or removed; its terminal event went out then
                if failure is None and output is not None:
                    self._discard_output(output)
                return
            job = self._jobs[job_id]
            if failure is None:
                job.status = JobStatus.SUCCEEDED
                job.output_path = output
                if job.progress < 100.0:
                    job.progress = 100.0
                    self._emit(ProgressEvent(job_id, 100.0))
            else:
                job.status = JobStatus.FAILED
                job.failure = failure
            self._emit(TerminalEvent(job_id, job.status, job.output_path, job.failure))
            name = job.name

        if failure is None:
            self._log("OK", f"Done: {output.name if output else name}", job_id)
        else:
            hint = f" Log: {failure.log_path}" if failure.log_path else ""
            self._log("ERROR", f"{name}: {failure.message}.{hint}", job_id)
            logger.error(f"{name} failed ({failure.reason.value}): {failure.message}")
