"""
Reconstruction coordinator - submits capture sessions to a capability
"""
from __future__ import annotations

import math
import os
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import logging

from config import config_value
from core.capture_session import CaptureSession, PhotoCapture, SessionState
from core.job_observer import JobObservable, JobSnapshot, JobState
from core.reconstruction.base_capability import (
    BaseCapability,
    CancelledEvent,
    CompletedEvent,
    DetailLevel,
    ErrorEvent,
    ProgressEvent,
)
from objectcapture.errors import (
    INSUFFICIENT_PHOTOS,
    JOB_ALREADY_ACTIVE,
    RECONSTRUCTION_FAILED,
    SESSION_NOT_READY,
    STREAM_ENDED,
    UNKNOWN_JOB,
    CancellationError,
    ProcessingError,
    StateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

JOB_DIR_PREFIX = "job-"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class ReconstructionJob:
    """Coordinator-owned job record. Observers only ever see :class:`JobSnapshot` copies."""

    job_id: str
    session_id: str
    source_photo_set_snapshot: Tuple[PhotoCapture, ...]
    detail_level: DetailLevel
    workspace: Path
    state: JobState = JobState.QUEUED
    progress: float = 0.0
    result: object = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    updated_monotonic: float = field(default_factory=time.monotonic)
    sequence: int = 0

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            session_id=self.session_id,
            state=self.state,
            progress=self.progress,
            detail_level=self.detail_level,
            photo_count=len(self.source_photo_set_snapshot),
            result=self.result,
            cancel_requested=self.cancel_requested,
            updated_at=self.updated_at,
        )


class ReconstructionCoordinator:
    """Maps a capability's event stream onto observable job records.

    Each submitted job is consumed by exactly one background thread. The
    coordinator guarantees:

    * at most one active (queued/reconstructing) job per session,
    * non-decreasing progress for every job,
    * exactly one terminal state per job,
    * a photo-set snapshot frozen at submit time.

    :meth:`submit` and :meth:`cancel` never block on the capability; outcomes
    are delivered through :meth:`observe`.
    """

    def __init__(self, capability: BaseCapability, config=None, work_dir: Optional[Path] = None):
        """Initialise the coordinator.

        Args:
            capability: Reconstruction engine that jobs are delegated to.
            config: Application config object. May be ``None``.
            work_dir: Root for job workspaces. Defaults to
                ``reconstruction.work_dir`` or a fresh temporary directory.
        """
        self.capability = capability
        self.config = config
        self._work_dir = Path(work_dir) if work_dir else None
        self._owns_work_dir = False
        self._jobs: Dict[str, ReconstructionJob] = {}
        self._observables: Dict[str, JobObservable] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def work_dir(self) -> Path:
        with self._lock:
            if self._work_dir is None:
                configured = config_value(self.config, "reconstruction.work_dir")
                if configured:
                    self._work_dir = Path(configured)
                    self._work_dir.mkdir(parents=True, exist_ok=True)
                else:
                    self._work_dir = Path(tempfile.mkdtemp(prefix="objectcapture-jobs-"))
                    self._owns_work_dir = True
            return self._work_dir

    def submit(
        self,
        session: CaptureSession,
        detail_level=None,
        on_update: Optional[Callable[[JobSnapshot], None]] = None,
    ) -> str:
        """Start reconstructing a finished capture session.

        Args:
            session: A session in the ``READY`` state.
            detail_level: :class:`DetailLevel` or its string value; defaults to
                ``reconstruction.detail_level``.
            on_update: Subscribed before any work starts, so it observes every
                snapshot from ``QUEUED`` onwards.

        Returns:
            The new job id.

        Raises:
            ValidationError: ``INSUFFICIENT_PHOTOS`` for an empty or
                below-minimum photo set.
            StateError: ``SESSION_NOT_READY`` or ``JOB_ALREADY_ACTIVE``.
        """
        level = DetailLevel.parse(
            detail_level if detail_level is not None else config_value(self.config, "reconstruction.detail_level")
        )
        photo_set = session.snapshot()
        minimum = session.minimum_photo_count
        if len(photo_set) < minimum:
            raise ValidationError(
                INSUFFICIENT_PHOTOS,
                f"{len(photo_set)} photo(s) in session; at least {minimum} required",
            )
        if session.state is not SessionState.READY:
            raise StateError(SESSION_NOT_READY, f"Session {session.session_id} is {session.state.value}")

        with self._lock:
            active = self._active_job_locked(session.session_id)
            if active is not None:
                raise StateError(
                    JOB_ALREADY_ACTIVE,
                    f"Job {active.job_id} is still {active.state.value} for session {session.session_id}",
                )

            job_id = str(uuid.uuid4())
            job = ReconstructionJob(
                job_id=job_id,
                session_id=session.session_id,
                source_photo_set_snapshot=photo_set,
                detail_level=level,
                workspace=self.work_dir / f"{JOB_DIR_PREFIX}{job_id}",
            )
            observable = JobObservable(job.snapshot(), job.sequence)
            self._jobs[job_id] = job
            self._observables[job_id] = observable

            thread = threading.Thread(
                target=self._run,
                args=(job,),
                name=f"reconstruction-{job_id[:8]}",
                daemon=True,
            )
            self._threads[job_id] = thread

        logger.info(
            f"Submitted job {job_id} for session {session.session_id}: "
            f"{len(photo_set)} photos, detail={level.value}, capability={self.capability.get_capability_name()}"
        )
        if on_update is not None:
            observable.subscribe(on_update)
        thread.start()
        return job_id

    def cancel(self, job_id: str) -> bool:
        """Request cancellation of an active job.

        Idempotent: only the first call for a job forwards the request to the
        capability. The job stays non-terminal until the capability
        acknowledges.

        Returns:
            ``True`` if this call sent the request, ``False`` if it was a no-op.

        Raises:
            StateError: ``UNKNOWN_JOB`` for an unknown job id.
        """
        with self._lock:
            job = self._get_job_locked(job_id)
            if job.state.is_terminal or job.cancel_requested:
                logger.debug(f"Cancel for job {job_id} ignored ({job.state.value}, requested={job.cancel_requested})")
                return False
            publication = self._update_locked(job, cancel_requested=True)

        self._publish(publication)
        self.capability.cancel(job_id)
        with self._lock:
            finished = job.state.is_terminal
        if finished:
            # The job ended while the request was in flight.
            self.capability.clear_cancelled(job_id)
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def observe(self, job_id: str) -> JobObservable:
        """Live view of a job; ``subscribe()`` on it yields the current snapshot then updates."""
        with self._lock:
            if job_id not in self._observables:
                raise StateError(UNKNOWN_JOB, f"No job {job_id}")
            return self._observables[job_id]

    def job(self, job_id: str) -> JobSnapshot:
        with self._lock:
            return self._get_job_locked(job_id).snapshot()

    def has_job(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def jobs_for_session(self, session_id: str) -> List[JobSnapshot]:
        """Snapshots of every retained job for *session_id*, oldest first."""
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.session_id == session_id]
            return [job.snapshot() for job in sorted(jobs, key=lambda j: j.created_at)]

    def active_job(self, session_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            job = self._active_job_locked(session_id)
            return job.snapshot() if job else None

    def workspace(self, job_id: str) -> Path:
        with self._lock:
            return self._get_job_locked(job_id).workspace

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobSnapshot:
        """Block until *job_id* is terminal (or *timeout* elapses); returns its latest snapshot."""
        return self.observe(job_id).wait(timeout)

    def seconds_since_update(self, job_id: str) -> float:
        with self._lock:
            return time.monotonic() - self._get_job_locked(job_id).updated_monotonic

    def is_stalled(self, job_id: str, interval: Optional[float] = None) -> bool:
        """Whether an active job has gone *interval* seconds without an update.

        Detection only; deciding to cancel is left to the caller.
        """
        if interval is None:
            interval = float(config_value(self.config, "reconstruction.stall_timeout_seconds", 120))
        with self._lock:
            job = self._get_job_locked(job_id)
            if not job.state.is_active:
                return False
            return time.monotonic() - job.updated_monotonic > interval

    def forget(self, job_id: str):
        """Drop a terminal job record."""
        with self._lock:
            job = self._get_job_locked(job_id)
            if not job.state.is_terminal:
                raise StateError(JOB_ALREADY_ACTIVE, f"Job {job_id} is still {job.state.value}")
            del self._jobs[job_id]
            del self._observables[job_id]
            self._threads.pop(job_id, None)
            if self._owns_work_dir and not self._jobs:
                self._remove_work_dir_locked()
        logger.debug(f"Forgot job {job_id}")

    # ------------------------------------------------------------------
    # Event consumption
    # ------------------------------------------------------------------

    def _run(self, job: ReconstructionJob):
        """Consume the capability stream for *job* on the job's thread."""
        try:
            job.workspace.mkdir(parents=True, exist_ok=True)
            events = self.capability.process(
                job.source_photo_set_snapshot,
                job.detail_level,
                job.workspace,
                job.job_id,
            )
            for event in events:
                self._apply(job, event)
        except Exception as e:
            logger.exception(f"Capability raised while processing job {job.job_id}")
            self._finish(job, JobState.FAILED, ProcessingError(RECONSTRUCTION_FAILED, str(e)))
            return

        if not job.state.is_terminal:
            self._finish(
                job,
                JobState.FAILED,
                ProcessingError(STREAM_ENDED, "Capability stream ended without a terminal event"),
            )

    def _apply(self, job: ReconstructionJob, event):
        with self._lock:
            if job.state.is_terminal:
                logger.warning(f"Ignoring {type(event).__name__} for job {job.job_id} after {job.state.value}")
                return
            cancel_requested = job.cancel_requested

        if isinstance(event, ProgressEvent):
            self._progress(job, event.fraction)
        elif isinstance(event, (CompletedEvent, ErrorEvent, CancelledEvent)) and cancel_requested:
            if not isinstance(event, CancelledEvent):
                logger.info(f"Job {job.job_id}: discarding {type(event).__name__} received after cancellation")
            self._finish(job, JobState.CANCELLED, CancellationError())
        elif isinstance(event, CompletedEvent):
            self._finish(job, JobState.COMPLETED, event.asset)
        elif isinstance(event, ErrorEvent):
            self._finish(job, JobState.FAILED, ProcessingError(event.kind, event.detail))
        elif isinstance(event, CancelledEvent):
            self._finish(job, JobState.CANCELLED, CancellationError())
        else:
            logger.warning(f"Job {job.job_id}: unknown capability event {event!r}")

    def _progress(self, job: ReconstructionJob, fraction):
        fraction = float(fraction)
        if math.isnan(fraction):
            logger.debug(f"Ignoring NaN progress for job {job.job_id}")
            return
        with self._lock:
            if job.state.is_terminal:
                return
            progress = max(job.progress, min(1.0, max(0.0, fraction)))
            if progress != fraction:
                logger.debug(f"Job {job.job_id}: progress {fraction} clamped to {progress}")
            publication = self._update_locked(job, state=JobState.RECONSTRUCTING, progress=progress)
        self._publish(publication)

    def _finish(self, job: ReconstructionJob, state: JobState, result):
        with self._lock:
            if job.state.is_terminal:
                return
            # A cancel request that races a terminal event always wins.
            if job.cancel_requested and state is not JobState.CANCELLED:
                state, result = JobState.CANCELLED, CancellationError()
            changes = {"state": state, "result": result}
            if state is JobState.COMPLETED:
                changes["progress"] = 1.0
            publication = self._update_locked(job, **changes)

        if state is JobState.FAILED:
            logger.error(f"Job {job.job_id} failed: {result}")
        else:
            logger.info(f"Job {job.job_id} {state.value}")
        self._publish(publication)
        self.capability.clear_cancelled(job.job_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update_locked(self, job: ReconstructionJob, **changes) -> Tuple[JobObservable, int, JobSnapshot]:
        """Apply *changes* and number the resulting snapshot.

        Returns the publication for :meth:`_publish`, which must be called
        after the coordinator lock is released.
        """
        for key, value in changes.items():
            setattr(job, key, value)
        job.updated_at = _now()
        job.updated_monotonic = time.monotonic()
        job.sequence += 1
        return self._observables[job.job_id], job.sequence, job.snapshot()

    @staticmethod
    def _publish(publication: Tuple[JobObservable, int, JobSnapshot]):
        observable, sequence, snapshot = publication
        observable.publish(snapshot, sequence)

    def _get_job_locked(self, job_id: str) -> ReconstructionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise StateError(UNKNOWN_JOB, f"No job {job_id}")
        return job

    def _active_job_locked(self, session_id: str) -> Optional[ReconstructionJob]:
        for job in self._jobs.values():
            if job.session_id == session_id and job.state.is_active:
                return job
        return None

    def _remove_work_dir_locked(self):
        """Remove the temporary job root this coordinator created, once it is empty."""
        try:
            os.rmdir(self._work_dir)
        except OSError as e:
            logger.debug(f"Keeping job root {self._work_dir}: {e}")
            return
        logger.debug(f"Removed job root {self._work_dir}")
        self._work_dir = None
        self._owns_work_dir = False
