import json
import tempfile
import unittest
from dataclasses import fields
from pathlib import Path

from core.models import BatchSettings, Job, JobStatus, QualityPreset
from core.presets import clamp_static_duration, load_batch_settings, save_batch_settings, settings_from_dict


class BatchSettingsStoreTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = Path(self._tmp.name) / "settings.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_and_load(self):
        settings = BatchSettings(
            output_dir=Path(self._tmp.name) / "out",
            output_format="mov",
            name_template="{name}_{date}",
            default_quality=QualityPreset.SMALL,
            default_fps=30,
            static_duration=2.5,
            background="#000000",
            job_timeout=120.0,
        )
        self.assertTrue(save_batch_settings(self.store, settings))
        self.assertEqual(load_batch_settings(self.store), settings)

    def test_missing_file_gives_defaults(self):
        self.assertEqual(load_batch_settings(self.store), BatchSettings())

    def test_corrupt_file_gives_defaults(self):
        self.store.write_text("{not json", encoding="utf-8")
        self.assertEqual(load_batch_settings(self.store), BatchSettings())
        self.store.write_text(json.dumps(["list"]), encoding="utf-8")
        self.assertEqual(load_batch_settings(self.store), BatchSettings())

    def test_bad_values_fall_back(self):
        settings = settings_from_dict(
            {"output_format": "gif", "default_quality": "ultra", "default_fps": "auto", "static_duration": 500}
        )
        self.assertEqual(settings.output_format, "mp4")
        self.assertEqual(settings.default_quality, QualityPreset.HIGH)
        self.assertIsNone(settings.default_fps)
        self.assertEqual(settings.static_duration, 60.0)

    def test_clamp_static_duration(self):
        self.assertEqual(clamp_static_duration(0), 0.1)
        self.assertEqual(clamp_static_duration("3"), 3.0)
        self.assertEqual(clamp_static_duration("abc"), 1.0)
        self.assertEqual(clamp_static_duration(float("nan")), 1.0)


class ModelsTest(unittest.TestCase):
    def test_quality_crf(self):
        self.assertEqual(QualityPreset.HIGH.crf, 18)
        self.assertEqual(QualityPreset.BALANCED.crf, 23)
        self.assertEqual(QualityPreset.SMALL.crf, 28)
        self.assertIs(QualityPreset.parse("Balanced"), QualityPreset.BALANCED)

    def test_terminal_statuses(self):
        self.assertFalse(JobStatus.QUEUED.is_terminal)
        self.assertFalse(JobStatus.RUNNING.is_terminal)
        self.assertTrue(JobStatus.SUCCEEDED.is_terminal)
        self.assertTrue(JobStatus.FAILED.is_terminal)

    def test_job_fields_and_snapshot(self):
        job = Job(source=Path("/media/in/clip.webp"), sequence=3)
        self.assertEqual(
            [f.name for f in fields(Job)],
            ["source", "sequence", "options", "id", "name", "status", "progress",
             "output_path", "failure", "dispatched_at"],
        )
        self.assertEqual(job.name, "clip.webp")
        self.assertIsNone(job.dispatched_at)
        copy = job.snapshot()
        copy.status = JobStatus.RUNNING
        self.assertIs(job.status, JobStatus.QUEUED)


if __name__ == "__main__":
    unittest.main()
