import queue
import tempfile
import threading
import time
import unittest
from dataclasses import replace
from pathlib import Path

from PIL import Image

from core.errors import Cancelled, EngineRuntimeFailure, ProbeError
from core.models import (
    BatchDoneEvent,
    BatchSettings,
    FailureReason,
    JobOptions,
    JobStatus,
    ProbeResult,
    ProgressEvent,
    QualityPreset,
    TerminalEvent,
)
from services.ffmpeg_service import FfmpegService
from services.prober import FormatProber
from services.scheduler import BatchScheduler

TIMEOUT = 10


def _wait_until(predicate, timeout=TIMEOUT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class StillProber:
    def __init__(self, broken=()):
        self.broken = set(broken)

    def probe(self, path):
        if Path(path).name in self.broken:
            raise ProbeError(f"{Path(path).name} is not a WebP file")
        return ProbeResult(is_animated=False, width=16, height=16)


class FakeEncoders:
    """Engine factory whose engines can be held open per source name."""

    def __init__(self, gates=None, failing=()):
        self.gates = gates or {}
        self.failing = set(failing)
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0
        self.started = []
        self.finished = []
        self.commands = {}
        self.lingering = {}
        self.after_output = {}

    def __call__(self, **kwargs):
        return FakeEngine(self, **kwargs)

    def gate(self, name):
        gate = threading.Event()
        self.gates[name] = gate
        return gate

    def linger(self, name):
        """Keep the engine alive after cancel until the returned event is set."""
        release = threading.Event()
        self.lingering[name] = release
        return release


class FakeEngine:
    def __init__(self, encoders, job_id, command, output, expected_duration, work_root,
                 on_progress=None, timeout=None, source=None, prepare=None):
        self.encoders = encoders
        self.job_id = job_id
        self.output = output
        self.on_progress = on_progress
        self.source = source
        self.work_root = Path(work_root)
        self.prepare = prepare
        self.cancel_event = threading.Event()
        encoders.commands[source.name] = command

    def cancel(self):
        self.cancel_event.set()

    def run(self):
        enc = self.encoders
        name = self.source.name
        with enc.lock:
            enc.running += 1
            enc.peak = max(enc.peak, enc.running)
            enc.started.append(name)
        try:
            if self.prepare is not None:
                self.work_root.mkdir(parents=True, exist_ok=True)
                enc.commands[name] = self.prepare(Path(tempfile.mkdtemp(dir=self.work_root)))
            self.on_progress(self.job_id, 50.0)
            self.on_progress(self.job_id, 40.0)
            gate = enc.gates.get(name)
            if gate is not None:
                while not gate.is_set() and not self.cancel_event.is_set():
                    time.sleep(0.01)
            if self.cancel_event.is_set():
                release = enc.lingering.get(name)
                if release is not None:
                    release.wait(TIMEOUT)
                raise Cancelled("Conversion cancelled by user")
            if name in enc.failing:
                raise EngineRuntimeFailure("FFmpeg exited with code 1")
            self.output.write_bytes(b"video")
            self.on_progress(self.job_id, 100.0)
            hook = enc.after_output.get(name)
            if hook is not None:
                hook()
            return self.output
        finally:
            with enc.lock:
                enc.running -= 1
                enc.finished.append(name)


class BatchSchedulerTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.events = queue.Queue()
        self.encoders = FakeEncoders()

    def tearDown(self):
        self._tmp.cleanup()

    def _scheduler(self, max_concurrent=2, prober=None, **settings):
        settings.setdefault("output_dir", self.root / "out")
        return BatchScheduler(
            FfmpegService("ffmpeg", None),
            self.events,
            settings=BatchSettings(**settings),
            max_concurrent=max_concurrent,
            prober=prober or StillProber(),
            engine_factory=self.encoders,
            work_root=self.root / "jobs",
        )

    def _sources(self, *names):
        return [self.root / name for name in names]

    def _drain(self):
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events

    def _by_name(self, scheduler):
        return {job.name: job for job in scheduler.jobs()}

    def test_respects_concurrency_ceiling(self):
        scheduler = self._scheduler(max_concurrent=2)
        gates = [self.encoders.gate(f"{i}.webp") for i in range(5)]
        scheduler.enqueue(self._sources(*(f"{i}.webp" for i in range(5))))
        self.assertTrue(scheduler.start_all())
        self.assertTrue(_wait_until(lambda: self.encoders.running == 2))
        stats = scheduler.stats()
        self.assertEqual(stats["running"], 2)
        self.assertEqual(stats["queued"], 3)
        for gate in gates:
            gate.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(self.encoders.peak, 2)
        self.assertTrue(all(job.status is JobStatus.SUCCEEDED for job in scheduler.jobs()))

    def test_next_job_starts_when_a_slot_frees(self):
        scheduler = self._scheduler(max_concurrent=2)
        gate_a = self.encoders.gate("a.webp")
        gate_b = self.encoders.gate("b.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp", "c.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 2))
        self.assertEqual(self._by_name(scheduler)["c.webp"].status, JobStatus.QUEUED)

        gate_a.set()
        self.assertTrue(_wait_until(lambda: "c.webp" in self.encoders.started))
        self.assertEqual(self._by_name(scheduler)["b.webp"].status, JobStatus.RUNNING)
        gate_b.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(sorted(self.encoders.started[:2]), ["a.webp", "b.webp"])
        self.assertEqual(self.encoders.started[2], "c.webp")
        self.assertEqual(self.encoders.peak, 2)

    def test_dispatch_is_fifo(self):
        scheduler = self._scheduler(max_concurrent=1)
        names = ["d.webp", "b.webp", "a.webp", "c.webp"]
        scheduler.enqueue(self._sources(*names))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(self.encoders.started, names)

    def test_start_all_is_idempotent_while_running(self):
        scheduler = self._scheduler(max_concurrent=2)
        gate = self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        self.assertTrue(scheduler.start_all())
        self.assertFalse(scheduler.start_all())
        gate.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(sorted(self.encoders.started), ["a.webp", "b.webp"])

    def test_progress_events_never_decrease(self):
        scheduler = self._scheduler()
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        seen = {}
        for event in self._drain():
            if isinstance(event, ProgressEvent):
                self.assertGreater(event.progress, seen.get(event.job_id, 0.0))
                seen[event.job_id] = event.progress
        self.assertEqual(sorted(seen.values()), [100.0, 100.0])
        self.assertTrue(all(job.progress == 100.0 for job in scheduler.jobs()))

    def test_failures_stay_with_their_job(self):
        self.encoders.failing.add("b.webp")
        scheduler = self._scheduler(prober=StillProber(broken={"c.webp"}))
        scheduler.enqueue(self._sources("a.webp", "b.webp", "c.webp", "d.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        jobs = self._by_name(scheduler)
        self.assertEqual(jobs["a.webp"].status, JobStatus.SUCCEEDED)
        self.assertEqual(jobs["d.webp"].status, JobStatus.SUCCEEDED)
        self.assertEqual(jobs["b.webp"].failure.reason, FailureReason.RUNTIME)
        self.assertEqual(jobs["c.webp"].failure.reason, FailureReason.PROBE)
        self.assertNotIn("c.webp", self.encoders.started)

        events = self._drain()
        terminal = [e for e in events if isinstance(e, TerminalEvent)]
        self.assertEqual(len(terminal), 4)
        self.assertEqual(events[-1], BatchDoneEvent(stopped=False))

    def test_build_error_fails_the_job(self):
        scheduler = self._scheduler(background="not-a-colour")
        scheduler.enqueue(self._sources("a.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        job = scheduler.jobs()[0]
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.failure.reason, FailureReason.BUILD)
        self.assertEqual(self.encoders.started, [])

    def test_cancel_running_job_frees_its_slot(self):
        scheduler = self._scheduler(max_concurrent=1)
        self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))
        job_a = self._by_name(scheduler)["a.webp"]

        self.assertTrue(scheduler.cancel(job_a.id))
        cancelled = scheduler.get(job_a.id)
        self.assertEqual(cancelled.status, JobStatus.FAILED)
        self.assertEqual(cancelled.failure.reason, FailureReason.CANCELLED)
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(self._by_name(scheduler)["b.webp"].status, JobStatus.SUCCEEDED)

        terminal_a = [e for e in self._drain() if isinstance(e, TerminalEvent) and e.job_id == job_a.id]
        self.assertEqual(len(terminal_a), 1)
        self.assertFalse(scheduler.cancel(job_a.id))

    def test_cancelled_job_slow_to_exit_does_not_hold_its_slot(self):
        scheduler = self._scheduler(max_concurrent=1)
        self.encoders.gate("a.webp")
        release = self.encoders.linger("a.webp")
        job_a, job_b = scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))

        self.assertTrue(scheduler.cancel(job_a.id))
        self.assertTrue(_wait_until(lambda: scheduler.get(job_b.id).status is JobStatus.SUCCEEDED))
        self.assertNotIn("a.webp", self.encoders.finished)
        self.assertTrue(scheduler.is_running())

        release.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(self.encoders.finished, ["b.webp", "a.webp"])
        self.assertEqual(scheduler.get(job_a.id).failure.reason, FailureReason.CANCELLED)
        terminal_a = [e for e in self._drain() if isinstance(e, TerminalEvent) and e.job_id == job_a.id]
        self.assertEqual(len(terminal_a), 1)

    def test_output_is_removed_when_cancel_lands_after_encoding(self):
        scheduler = self._scheduler()
        job = scheduler.enqueue(self._sources("a.webp"))[0]
        self.encoders.after_output["a.webp"] = lambda: scheduler.cancel(job.id)
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        cancelled = scheduler.get(job.id)
        self.assertEqual(cancelled.status, JobStatus.FAILED)
        self.assertEqual(cancelled.failure.reason, FailureReason.CANCELLED)
        self.assertIsNone(cancelled.output_path)
        self.assertFalse((self.root / "out" / "a.mp4").exists())

    def test_running_job_keeps_the_settings_it_started_with(self):
        scheduler = self._scheduler(max_concurrent=1, static_duration=2.0)
        gate = self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))

        scheduler.update_batch_settings(replace(scheduler.settings, static_duration=5.0, output_format="mov"))
        gate.set()
        self.assertTrue(scheduler.wait(TIMEOUT))

        first = self.encoders.commands["a.webp"]
        self.assertEqual(first[first.index("-t") + 1], "2.0")
        self.assertEqual(first[-3], "mp4")
        second = self.encoders.commands["b.webp"]
        self.assertEqual(second[second.index("-t") + 1], "5.0")
        self.assertEqual(second[-3], "mov")
        jobs = self._by_name(scheduler)
        self.assertEqual(jobs["a.webp"].output_path.name, "a.mp4")
        self.assertEqual(jobs["b.webp"].output_path.name, "b.mov")

    def test_animated_source_is_encoded_from_decoded_frames(self):
        source = self.root / "anim.webp"
        frames = [Image.new("RGBA", (8, 8), color) for color in ((255, 0, 0, 255), (0, 0, 255, 255))]
        frames[0].save(source, save_all=True, append_images=frames[1:], duration=[100, 200], loop=0)
        scheduler = self._scheduler(prober=FormatProber(FfmpegService("ffmpeg", None)))
        job = scheduler.enqueue([source])[0]
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))

        self.assertEqual(scheduler.get(job.id).status, JobStatus.SUCCEEDED)
        command = self.encoders.commands["anim.webp"]
        self.assertEqual(command[command.index("-f") + 1], "concat")
        frame_list = Path(command[command.index("-i") + 1])
        self.assertNotEqual(frame_list, source)
        self.assertIn("duration 0.200000", frame_list.read_text(encoding="utf-8"))
        self.assertNotIn("-loop", command)

    def test_remove_running_job(self):
        scheduler = self._scheduler(max_concurrent=1)
        self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))
        job_a = self._by_name(scheduler)["a.webp"]
        self.assertTrue(scheduler.remove(job_a.id))
        self.assertIsNone(scheduler.get(job_a.id))
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual([job.name for job in scheduler.jobs()], ["b.webp"])
        terminal = [e for e in self._drain() if isinstance(e, TerminalEvent) and e.job_id == job_a.id]
        self.assertEqual(terminal[0].failure.reason, FailureReason.CANCELLED)

    def test_remove_queued_job(self):
        scheduler = self._scheduler()
        jobs = scheduler.enqueue(self._sources("a.webp", "b.webp"))
        self.assertTrue(scheduler.remove(jobs[0].id))
        self.assertFalse(scheduler.remove(jobs[0].id))
        self.assertEqual([job.name for job in scheduler.jobs()], ["b.webp"])

    def test_start_all_retries_failed_jobs(self):
        self.encoders.failing.add("a.webp")
        scheduler = self._scheduler(max_concurrent=1)
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        before = self._by_name(scheduler)
        self.assertEqual(before["a.webp"].status, JobStatus.FAILED)

        self.encoders.failing.clear()
        self.assertTrue(scheduler.start_all())
        self.assertTrue(scheduler.wait(TIMEOUT))
        after = self._by_name(scheduler)
        self.assertEqual(after["a.webp"].status, JobStatus.SUCCEEDED)
        self.assertIsNone(after["a.webp"].failure)
        self.assertGreater(after["a.webp"].sequence, before["b.webp"].sequence)
        self.assertEqual(self.encoders.started, ["a.webp", "b.webp", "a.webp"])

    def test_retry_single_job(self):
        self.encoders.failing.add("a.webp")
        scheduler = self._scheduler()
        job = scheduler.enqueue(self._sources("a.webp"))[0]
        self.assertFalse(scheduler.retry(job.id))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertTrue(scheduler.retry(job.id))
        retried = scheduler.get(job.id)
        self.assertEqual(retried.status, JobStatus.QUEUED)
        self.assertEqual(retried.progress, 0.0)

    def test_stop_leaves_remaining_jobs_queued(self):
        scheduler = self._scheduler(max_concurrent=1)
        gate = self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp", "b.webp", "c.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))
        scheduler.stop()
        gate.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        jobs = self._by_name(scheduler)
        self.assertEqual(jobs["a.webp"].status, JobStatus.SUCCEEDED)
        self.assertEqual(jobs["b.webp"].status, JobStatus.QUEUED)
        self.assertEqual(jobs["c.webp"].status, JobStatus.QUEUED)
        self.assertIn(BatchDoneEvent(stopped=True), self._drain())
        self.assertFalse(scheduler.is_running())

    def test_jobs_added_during_a_batch_are_admitted(self):
        scheduler = self._scheduler(max_concurrent=1)
        gate = self.encoders.gate("a.webp")
        scheduler.enqueue(self._sources("a.webp"))
        scheduler.start_all()
        self.assertTrue(_wait_until(lambda: self.encoders.running == 1))
        scheduler.enqueue(self._sources("b.webp"))
        gate.set()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(self.encoders.started, ["a.webp", "b.webp"])

    def test_duplicate_paths_are_skipped(self):
        scheduler = self._scheduler()
        first = scheduler.enqueue(self._sources("a.webp", "b.webp"))
        again = scheduler.enqueue(self._sources("a.webp", "c.webp"))
        self.assertEqual(len(first), 2)
        self.assertEqual([job.name for job in again], ["c.webp"])
        self.assertEqual(len(scheduler.jobs()), 3)

    def test_clear_completed(self):
        self.encoders.failing.add("b.webp")
        scheduler = self._scheduler()
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        self.assertEqual(scheduler.clear_completed(), 1)
        self.assertEqual([job.name for job in scheduler.jobs()], ["b.webp"])

    def test_same_names_never_share_an_output(self):
        scheduler = self._scheduler(max_concurrent=2)
        (self.root / "x").mkdir()
        (self.root / "y").mkdir()
        scheduler.enqueue([self.root / "x" / "clip.webp", self.root / "y" / "clip.webp"])
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        outputs = sorted(job.output_path.name for job in scheduler.jobs())
        self.assertEqual(outputs, ["clip-1.mp4", "clip.mp4"])

    def test_name_template_counter_follows_sequence(self):
        scheduler = self._scheduler(name_template="frame_{counter}", output_format="mov")
        scheduler.enqueue(self._sources("a.webp", "b.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        jobs = self._by_name(scheduler)
        self.assertEqual(jobs["a.webp"].output_path.name, "frame_1.mov")
        self.assertEqual(jobs["b.webp"].output_path.name, "frame_2.mov")

    def test_per_job_options_reach_the_command(self):
        scheduler = self._scheduler()
        job = scheduler.enqueue(self._sources("a.webp"))[0]
        self.assertTrue(scheduler.update_job_options(job.id, JobOptions(quality=QualityPreset.SMALL, fps=24)))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        command = self.encoders.commands["a.webp"]
        self.assertEqual(command[command.index("-crf") + 1], "28")
        self.assertEqual(command[command.index("-r") + 1], "24")

    def test_empty_queue_does_not_start(self):
        scheduler = self._scheduler()
        self.assertFalse(scheduler.start_all())
        self.assertFalse(scheduler.is_running())

    def test_missing_encoder_is_a_spawn_failure(self):
        scheduler = BatchScheduler(
            FfmpegService(str(self.root / "no-ffmpeg"), None),
            self.events,
            settings=BatchSettings(output_dir=self.root / "out"),
            prober=StillProber(),
            work_root=self.root / "jobs",
        )
        scheduler.enqueue(self._sources("a.webp"))
        scheduler.start_all()
        self.assertTrue(scheduler.wait(TIMEOUT))
        job = scheduler.jobs()[0]
        self.assertEqual(job.failure.reason, FailureReason.SPAWN)
        self.assertTrue(job.failure.log_path.exists())


if __name__ == "__main__":
    unittest.main()
