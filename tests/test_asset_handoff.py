"""Tests for core/asset_handoff.py - asset exposure, retention and workspace cleanup."""

import shutil
import tempfile
import threading
import unittest
from pathlib import Path

from config import Config
from core.asset_handoff import AssetHandoff
from core.capture_session import CaptureSession, SessionState
from core.job_observer import JobState
from core.reconstruction.capabilities.scripted import ScriptedCapability
from core.reconstruction_coordinator import ReconstructionCoordinator

TIMEOUT = 10


class _HandoffTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.config = Config.from_dict({
            "capture": {"temp_dir": str(self.tmp / "captures")},
            "reconstruction": {"work_dir": str(self.tmp / "jobs")},
        })

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _setup(self, capability):
        self.capability = capability
        self.coordinator = ReconstructionCoordinator(capability, self.config)
        self.handoff = AssetHandoff(self.coordinator)
        self.session = CaptureSession(self.config)
        self.handoff.bind_session(self.session)
        self.session.start()
        for i in range(3):
            self.session.add_photo(f"photo-{i}".encode())
        self.session.finish()

    def _run_job(self, **scripted):
        self._setup(ScriptedCapability(**scripted))
        job_id = self.coordinator.submit(self.session)
        final = self.coordinator.wait(job_id, timeout=TIMEOUT)
        return job_id, final


class TestCompletedAsset(_HandoffTestCase):
    def test_completed_job_exposes_asset(self):
        job_id, final = self._run_job()
        asset = self.handoff.completed_asset(job_id)
        self.assertEqual(asset, final.result)
        self.assertTrue(asset.file_reference.exists())

    def test_failed_job_has_no_asset(self):
        job_id, _ = self._run_job(outcome="error")
        self.assertIsNone(self.handoff.completed_asset(job_id))
        self.assertIsNone(self.handoff.retain(job_id))
        self.assertFalse(self.handoff.is_retained(job_id))

    def test_unknown_job_has_no_asset(self):
        self._setup(ScriptedCapability())
        self.assertIsNone(self.handoff.completed_asset("missing"))


class TestRelease(_HandoffTestCase):
    def test_nothing_deleted_without_release(self):
        job_id, final = self._run_job()
        self.handoff.cleanup()
        self.assertTrue(final.result.file_reference.exists())
        self.assertTrue(self.coordinator.has_job(job_id))

    def test_release_of_terminal_job_removes_workspace_and_record(self):
        job_id, _ = self._run_job()
        workspace = self.coordinator.workspace(job_id)

        self.handoff.release(job_id)

        self.assertFalse(workspace.exists())
        self.assertFalse(self.coordinator.has_job(job_id))
        self.assertFalse(self.handoff.is_released(job_id))

    def test_release_of_failed_job_removes_partial_artifacts(self):
        job_id, _ = self._run_job(outcome="error")
        workspace = self.coordinator.workspace(job_id)
        (workspace / "partial.bin").write_bytes(b"half a mesh")

        self.handoff.release(job_id)
        self.assertFalse(workspace.exists())

    def test_retained_asset_survives_release_until_relinquished(self):
        job_id, final = self._run_job()
        asset = self.handoff.retain(job_id)
        self.assertEqual(asset, final.result)

        self.handoff.release(job_id)
        self.assertTrue(asset.file_reference.exists())
        self.assertTrue(self.handoff.is_released(job_id))

        self.handoff.relinquish(job_id)
        self.assertFalse(asset.file_reference.exists())
        self.assertFalse(self.coordinator.has_job(job_id))

    def test_release_of_active_job_waits_for_terminal_state(self):
        hold = threading.Event()
        self._setup(ScriptedCapability(hold=hold))
        job_id = self.coordinator.submit(self.session)
        observable = self.coordinator.observe(job_id)
        self.assertTrue(self.capability.started.wait(TIMEOUT))
        workspace = self.coordinator.workspace(job_id)

        self.handoff.release(job_id)
        self.assertTrue(workspace.exists())
        self.assertTrue(self.handoff.is_released(job_id))

        hold.set()
        final = observable.wait(TIMEOUT)

        self.assertIs(final.state, JobState.COMPLETED)
        self.assertFalse(workspace.exists())
        self.assertFalse(self.coordinator.has_job(job_id))

    def test_release_twice_is_harmless(self):
        job_id, _ = self._run_job()
        self.handoff.release(job_id)
        self.handoff.release(job_id)
        self.assertFalse(self.handoff.is_released(job_id))


class TestSessionReset(_HandoffTestCase):
    def test_reset_cancels_active_job_and_cleans_everything(self):
        hold = threading.Event()
        self._setup(ScriptedCapability(hold=hold))
        job_id = self.coordinator.submit(self.session)
        observable = self.coordinator.observe(job_id)
        self.assertTrue(self.capability.started.wait(TIMEOUT))
        workspace = self.coordinator.workspace(job_id)
        photo_paths = [p.file_reference for p in self.session.photos]

        self.session.reset()

        self.assertIs(self.session.state, SessionState.IDLE)
        self.assertTrue(all(not path.exists() for path in photo_paths))
        self.assertTrue(observable.current.cancel_requested)

        hold.set()
        final = observable.wait(TIMEOUT)
        self.assertIs(final.state, JobState.CANCELLED)
        self.assertFalse(workspace.exists())
        self.assertFalse(self.coordinator.has_job(job_id))

    def test_reset_after_completion_keeps_retained_asset(self):
        job_id, final = self._run_job()
        self.handoff.retain(job_id)

        self.session.reset()

        self.assertTrue(final.result.file_reference.exists())
        self.assertTrue(self.handoff.is_retained(job_id))

    def test_reset_after_completion_removes_unretained_workspace(self):
        job_id, _ = self._run_job()
        workspace = self.coordinator.workspace(job_id)

        self.session.reset()

        self.assertFalse(workspace.exists())
        self.assertEqual(self.coordinator.jobs_for_session(self.session.session_id), [])


if __name__ == "__main__":
    unittest.main()
