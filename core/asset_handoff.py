"""
Asset handoff - exposes completed assets and owns workspace cleanup
"""
from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Dict, Optional, Set
import logging

from core.capture_session import CaptureSession
from core.job_observer import JobSnapshot, JobState, JobSubscription
from core.reconstruction.base_capability import Asset
from core.reconstruction_coordinator import ReconstructionCoordinator
from objectcapture.errors import StateError

logger = logging.getLogger(__name__)


class AssetHandoff:
    """Hands completed assets to the preview collaborator and cleans up after jobs.

    Nothing is deleted implicitly: a job workspace (asset or partial artifacts
    of a failed/cancelled job) is removed only after :meth:`release`, once the
    job is terminal and not retained.
    """

    def __init__(self, coordinator: ReconstructionCoordinator):
        self.coordinator = coordinator
        self._released: Set[str] = set()
        self._retained: Set[str] = set()
        self._watches: Dict[str, JobSubscription] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def completed_asset(self, job_id: str) -> Optional[Asset]:
        """The job's asset if it completed, otherwise ``None``."""
        snapshot = self._snapshot(job_id)
        if snapshot is None or snapshot.state is not JobState.COMPLETED:
            return None
        return snapshot.result

    def retain(self, job_id: str) -> Optional[Asset]:
        """Pin a completed asset so release never deletes it.

        Returns:
            The retained asset, or ``None`` if the job has no completed asset.
        """
        asset = self.completed_asset(job_id)
        if asset is None:
            return None
        with self._lock:
            self._retained.add(job_id)
        logger.info(f"Asset for job {job_id} retained: {asset.file_reference}")
        return asset

    def relinquish(self, job_id: str):
        """Undo :meth:`retain`; a released job is cleaned up right away."""
        with self._lock:
            self._retained.discard(job_id)
        self._sweep(job_id)

    def release(self, job_id: str):
        """Mark the job's workspace eligible for cleanup.

        Terminal, unretained jobs are cleaned immediately; active jobs once
        they reach a terminal state.
        """
        snapshot = self._snapshot(job_id)
        if snapshot is None:
            logger.debug(f"Release of unknown job {job_id} ignored")
            return
        with self._lock:
            self._released.add(job_id)
            watching = job_id in self._watches
        logger.info(f"Job {job_id} released ({snapshot.state.value})")

        if snapshot.is_terminal:
            self._sweep(job_id)
        elif not watching:
            subscription = self.coordinator.observe(job_id).subscribe(self._on_job_update)
            with self._lock:
                pending = job_id in self._released
                if pending:
                    self._watches[job_id] = subscription
            if not pending:
                subscription.close()

    def cleanup(self):
        """Sweep every released job that has become eligible."""
        with self._lock:
            pending = list(self._released)
        for job_id in pending:
            self._sweep(job_id)

    def is_released(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._released

    def is_retained(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._retained

    def bind_session(self, session: CaptureSession):
        """Tie cleanup to ``session.reset()``."""
        session.add_reset_listener(self._on_session_reset)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _on_session_reset(self, session: CaptureSession):
        jobs = self.coordinator.jobs_for_session(session.session_id)
        for snapshot in jobs:
            if not snapshot.is_terminal:
                self.coordinator.cancel(snapshot.job_id)
        for snapshot in jobs:
            self.release(snapshot.job_id)

    def _on_job_update(self, snapshot: JobSnapshot):
        if snapshot.is_terminal:
            self._sweep(snapshot.job_id)

    def _snapshot(self, job_id: str) -> Optional[JobSnapshot]:
        try:
            return self.coordinator.job(job_id)
        except StateError:
            return None

    def _sweep(self, job_id: str):
        with self._lock:
            if job_id not in self._released or job_id in self._retained:
                return

        snapshot = self._snapshot(job_id)
        if snapshot is None:
            with self._lock:
                self._released.discard(job_id)
            return
        if not snapshot.is_terminal:
            return

        workspace: Path = self.coordinator.workspace(job_id)
        with self._lock:
            # Another thread may have swept or retained it meanwhile.
            if job_id not in self._released or job_id in self._retained:
                return
            self._released.discard(job_id)
            subscription = self._watches.pop(job_id, None)

        if subscription is not None:
            subscription.close()
        shutil.rmtree(workspace, ignore_errors=True)
        if workspace.exists():
            logger.warning(f"Could not fully remove job workspace {workspace}")
        try:
            self.coordinator.forget(job_id)
        except StateError:
            logger.debug(f"Job {job_id} already forgotten")
        logger.info(f"Cleaned up job {job_id} ({snapshot.state.value})")
