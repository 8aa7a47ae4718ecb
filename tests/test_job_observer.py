"""Tests for core/job_observer.py - job snapshots and subscriber fan-out."""

import queue
import threading
import unittest
from dataclasses import replace

from core.job_observer import JobObservable, JobSnapshot, JobState
from core.reconstruction.base_capability import DetailLevel
from objectcapture.errors import ProcessingError


def _snapshot(state=JobState.QUEUED, progress=0.0, **kwargs) -> JobSnapshot:
    return JobSnapshot(
        job_id="job-1",
        session_id="session-1",
        state=state,
        progress=progress,
        detail_level=DetailLevel.REDUCED,
        photo_count=3,
        **kwargs,
    )


class TestJobState(unittest.TestCase):
    def test_terminal_and_active_partition(self):
        for state in JobState:
            self.assertNotEqual(state.is_terminal, state.is_active)
        self.assertTrue(JobState.CANCELLED.is_terminal)
        self.assertTrue(JobState.QUEUED.is_active)


class TestJobSnapshot(unittest.TestCase):
    def test_snapshot_is_frozen(self):
        snap = _snapshot()
        with self.assertRaises(Exception):
            snap.progress = 0.5

    def test_error_and_asset_accessors(self):
        error = ProcessingError("RECONSTRUCTION_FAILED", "boom")
        failed = _snapshot(JobState.FAILED, 0.4, result=error)
        self.assertIs(failed.error, error)
        self.assertIsNone(failed.asset)

    def test_to_dict_renders_enums_and_result(self):
        failed = _snapshot(JobState.FAILED, 0.4, result=ProcessingError("RECONSTRUCTION_FAILED", "boom"))
        data = failed.to_dict()
        self.assertEqual(data["state"], "failed")
        self.assertEqual(data["detailLevel"], "reduced")
        self.assertEqual(data["result"]["errorCode"], "RECONSTRUCTION_FAILED")
        self.assertEqual(data["result"]["category"], "ProcessingError")


class TestJobObservable(unittest.TestCase):
    def test_new_subscriber_receives_current_snapshot_first(self):
        observable = JobObservable(_snapshot())
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.3))

        subscription = observable.subscribe()
        first = subscription.get(timeout=1)
        self.assertIs(first.state, JobState.RECONSTRUCTING)
        self.assertEqual(first.progress, 0.3)

    def test_updates_delivered_in_order_to_every_subscriber(self):
        observable = JobObservable(_snapshot())
        pushed = []
        a = observable.subscribe()
        b = observable.subscribe(pushed.append)

        for progress in (0.1, 0.2, 0.3):
            observable.publish(_snapshot(JobState.RECONSTRUCTING, progress))

        expected = [0.0, 0.1, 0.2, 0.3]
        self.assertEqual([s.progress for s in a.drain()], expected)
        self.assertEqual([s.progress for s in b.drain()], expected)
        self.assertEqual([s.progress for s in pushed], expected)

    def test_closed_subscription_stops_receiving(self):
        observable = JobObservable(_snapshot())
        subscription = observable.subscribe()
        subscription.close()
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.5))
        self.assertEqual(len(subscription.drain()), 1)
        self.assertEqual(observable.subscriber_count, 0)

    def test_failing_callback_does_not_break_fan_out(self):
        observable = JobObservable(_snapshot())

        def explode(_snapshot):
            raise RuntimeError("observer bug")

        with self.assertLogs("core.job_observer", level="ERROR"):
            observable.subscribe(explode)
        healthy = observable.subscribe()
        with self.assertLogs("core.job_observer", level="ERROR"):
            observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.5))
        self.assertEqual([s.progress for s in healthy.drain()], [0.0, 0.5])

    def test_callback_that_publishes_does_not_reorder_other_subscribers(self):
        observable = JobObservable(_snapshot())
        published = []

        def republish(snapshot):
            if snapshot.progress == 0.2 and not published:
                published.append(True)
                observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.2, cancel_requested=True))

        first = observable.subscribe(republish)
        seen = []
        observable.subscribe(seen.append)
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.2))
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.4, cancel_requested=True))

        expected = [(0.0, False), (0.2, False), (0.2, True), (0.4, True)]
        self.assertEqual([(s.progress, s.cancel_requested) for s in seen], expected)
        self.assertEqual([(s.progress, s.cancel_requested) for s in first.drain()], expected)

    def test_sequence_numbers_restore_publication_order(self):
        observable = JobObservable(_snapshot())
        subscription = observable.subscribe()
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.6), sequence=2)
        self.assertEqual(observable.current.progress, 0.0)

        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.3), sequence=1)
        with self.assertLogs("core.job_observer", level="WARNING"):
            observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.9), sequence=1)

        self.assertEqual([s.progress for s in subscription.drain()], [0.0, 0.3, 0.6])
        self.assertEqual(observable.sequence, 2)

    def test_callback_runs_without_holding_observable_lock(self):
        observable = JobObservable(_snapshot())
        results = []

        def read_from_other_thread(_snapshot):
            worker = threading.Thread(target=lambda: results.append(observable.current))
            worker.start()
            worker.join(5)

        observable.subscribe(read_from_other_thread)
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.5))
        self.assertEqual(len(results), 2)

    def test_iter_until_terminal_stops_at_terminal(self):
        observable = JobObservable(_snapshot())
        subscription = observable.subscribe()
        observable.publish(_snapshot(JobState.RECONSTRUCTING, 0.5))
        observable.publish(_snapshot(JobState.COMPLETED, 1.0))
        observable.publish(_snapshot(JobState.COMPLETED, 1.0))

        states = [s.state for s in subscription.iter_until_terminal(timeout=1)]
        self.assertEqual(states, [JobState.QUEUED, JobState.RECONSTRUCTING, JobState.COMPLETED])

    def test_get_times_out_when_nothing_published(self):
        observable = JobObservable(_snapshot())
        subscription = observable.subscribe()
        subscription.get(timeout=1)
        with self.assertRaises(queue.Empty):
            subscription.get(timeout=0.01)

    def test_wait_returns_after_terminal_publish(self):
        observable = JobObservable(_snapshot())
        terminal = replace(_snapshot(), state=JobState.CANCELLED)
        timer = threading.Timer(0.05, observable.publish, args=(terminal,))
        timer.start()
        result = observable.wait(timeout=5)
        timer.join()
        self.assertIs(result.state, JobState.CANCELLED)


if __name__ == "__main__":
    unittest.main()
