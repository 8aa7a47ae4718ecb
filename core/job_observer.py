"""
Live, multi-subscriber view of a reconstruction job.

The coordinator is the only publisher. Subscribers are passive: they receive
the current snapshot as soon as they subscribe and then every later snapshot
in publication order. Snapshots are frozen, so observers cannot mutate job
state.
"""
from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class JobState(Enum):
    QUEUED = "queued"
    RECONSTRUCTING = "reconstructing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (JobState.QUEUED, JobState.RECONSTRUCTING)


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable copy of a job's observable fields."""

    job_id: str
    session_id: str
    state: JobState
    progress: float
    detail_level: object
    photo_count: int
    result: object = None
    cancel_requested: bool = False
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def asset(self):
        return self.result if self.state is JobState.COMPLETED else None

    @property
    def error(self):
        return self.result if self.state in (JobState.FAILED, JobState.CANCELLED) else None

    def to_dict(self) -> dict:
        result = None
        if self.result is not None and hasattr(self.result, "to_dict"):
            result = self.result.to_dict()
        return {
            "type": "job",
            "jobId": self.job_id,
            "sessionId": self.session_id,
            "state": self.state.value,
            "progress": round(self.progress, 4),
            "detailLevel": getattr(self.detail_level, "value", self.detail_level),
            "photoCount": self.photo_count,
            "cancelRequested": self.cancel_requested,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "result": result,
        }


class JobSubscription:
    """One subscriber's ordered view of a job.

    Updates are queued for pull-style consumption (:meth:`get`, iteration) and,
    when a callback was given, also pushed to it. Callbacks run on whichever
    thread is dispatching for the observable, never while one of its locks is
    held, so a callback may read or cancel the job.
    """

    def __init__(self, observable: "JobObservable", callback: Optional[Callable[[JobSnapshot], None]] = None):
        self._observable = observable
        self._callback = callback
        self._queue: "queue.Queue[JobSnapshot]" = queue.Queue()
        self.closed = False

    def _enqueue(self, snapshot: JobSnapshot):
        self._queue.put(snapshot)

    def _notify(self, snapshot: JobSnapshot):
        if self._callback is None or self.closed:
            return
        try:
            self._callback(snapshot)
        except Exception:
            logger.exception("Job observer callback failed for %s", snapshot.job_id)

    def get(self, timeout: Optional[float] = None) -> JobSnapshot:
        """Next snapshot in order. Raises :class:`queue.Empty` on timeout."""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[JobSnapshot]:
        """All snapshots delivered so far and not yet consumed."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def iter_until_terminal(self, timeout: Optional[float] = None) -> Iterator[JobSnapshot]:
        """Yield snapshots up to and including the first terminal one."""
        while True:
            snapshot = self.get(timeout=timeout)
            yield snapshot
            if snapshot.is_terminal:
                return

    def close(self):
        if not self.closed:
            self._observable._unsubscribe(self)
            self.closed = True


class JobObservable:
    """Fan-out of one job's snapshots to any number of subscribers.

    Snapshots carry a sequence number; out-of-order publications are held
    back until the gap is filled. Queues are fed under the lock in sequence
    order. Callbacks are dispatched afterwards by a single thread at a time
    from an ordered backlog, so a callback that publishes again (for example
    by cancelling the job) only appends to the backlog and every subscriber
    still sees the same order.
    """

    def __init__(self, initial: JobSnapshot, sequence: int = 0):
        self._current = initial
        self._sequence = sequence
        self._pending: Dict[int, JobSnapshot] = {}
        self._subscriptions: List[JobSubscription] = []
        self._backlog: Deque[Tuple[Tuple[JobSubscription, ...], JobSnapshot]] = deque()
        self._dispatching = False
        self._lock = threading.Lock()
        self._terminal = threading.Event()
        if initial.is_terminal:
            self._terminal.set()

    @property
    def current(self) -> JobSnapshot:
        with self._lock:
            return self._current

    @property
    def sequence(self) -> int:
        """Sequence number of :attr:`current`."""
        with self._lock:
            return self._sequence

    def subscribe(self, callback: Optional[Callable[[JobSnapshot], None]] = None) -> JobSubscription:
        """Subscribe; the current snapshot is queued before this returns.

        The callback receives it before any later snapshot. It runs on this
        thread unless another thread is already dispatching.
        """
        subscription = JobSubscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
            subscription._enqueue(self._current)
            self._backlog.append(((subscription,), self._current))
        self._dispatch()
        return subscription

    def publish(self, snapshot: JobSnapshot, sequence: Optional[int] = None):
        """Record *snapshot* and deliver it to every subscriber in sequence order.

        Args:
            snapshot: The new job snapshot.
            sequence: Its position in the job's history. Defaults to the next
                number after everything seen so far.
        """
        with self._lock:
            if sequence is None:
                sequence = max([self._sequence, *self._pending]) + 1
            if sequence <= self._sequence or sequence in self._pending:
                logger.warning("Ignoring duplicate snapshot %d for job %s", sequence, snapshot.job_id)
                return
            self._pending[sequence] = snapshot
            while self._sequence + 1 in self._pending:
                self._sequence += 1
                self._current = self._pending.pop(self._sequence)
                subscribers: Tuple[JobSubscription, ...] = tuple(self._subscriptions)
                for subscription in subscribers:
                    subscription._enqueue(self._current)
                self._backlog.append((subscribers, self._current))
        self._dispatch()

    def wait(self, timeout: Optional[float] = None) -> JobSnapshot:
        """Block until a terminal snapshot has reached every callback; returns the current snapshot."""
        self._terminal.wait(timeout)
        return self.current

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _dispatch(self):
        with self._lock:
            if self._dispatching:
                return
            self._dispatching = True
        while True:
            with self._lock:
                if not self._backlog:
                    self._dispatching = False
                    return
                subscribers, snapshot = self._backlog.popleft()
            try:
                for subscription in subscribers:
                    subscription._notify(snapshot)
            except BaseException:
                # Interrupted mid-dispatch; let the next publisher take over.
                with self._lock:
                    self._dispatching = False
                raise
            if snapshot.is_terminal:
                self._terminal.set()

    def _unsubscribe(self, subscription: JobSubscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
