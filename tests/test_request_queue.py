"""
Request batching queue: batch bounds, ordering, isolation, cancellation.
"""
import threading
import time

import pytest

from lms_dashboard.exceptions import OperationCancelled
from lms_dashboard.request_queue import CancellationToken, RequestQueue

TIMEOUT = 5


class ConcurrencyTracker:
    """Records how many operations run at once and in what order."""

    def __init__(self, hold: float = 0.02):
        self.hold = hold
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0
        self.events = []

    def op(self, index):
        def run():
            with self.lock:
                self.running += 1
                self.peak = max(self.peak, self.running)
                self.events.append(("start", index))
            time.sleep(self.hold)
            with self.lock:
                self.running -= 1
                self.events.append(("end", index))
            return index
        return run


class TestBatching:

    def test_batches_and_bound(self):
        tracker = ConcurrencyTracker()
        queue = RequestQueue(batch_size=3, pacing_delay=0, autostart=False)
        futures = [queue.enqueue(tracker.op(i)) for i in range(7)]

        assert queue.drain() == 3
        assert [f.result(timeout=TIMEOUT) for f in futures] == list(range(7))
        assert tracker.peak <= 3
        stats = queue.get_stats()
        assert stats["batches"] == 3
        assert stats["completed"] == 7
        assert stats["max_concurrency"] <= 3
        queue.shutdown()

    def test_batch_runs_concurrently(self):
        barrier = threading.Barrier(3, timeout=TIMEOUT)
        queue = RequestQueue(batch_size=3, pacing_delay=0, autostart=False)
        futures = [queue.enqueue(barrier.wait) for _ in range(3)]

        drainer = threading.Thread(target=queue.drain)
        drainer.start()
        drainer.join(TIMEOUT)

        # Each wait returns only once all three are inside the barrier together
        assert sorted(f.result(timeout=TIMEOUT) for f in futures) == [0, 1, 2]
        assert queue.get_stats()["batches"] == 1
        queue.shutdown()

    def test_next_batch_waits_for_previous_to_settle(self):
        tracker = ConcurrencyTracker()
        queue = RequestQueue(batch_size=3, pacing_delay=0, autostart=False)
        for i in range(6):
            queue.enqueue(tracker.op(i))
        queue.drain()

        last_end_first_batch = max(
            n for n, event in enumerate(tracker.events) if event in {("end", i) for i in range(3)}
        )
        first_start_second_batch = min(
            n for n, event in enumerate(tracker.events) if event in {("start", i) for i in range(3, 6)}
        )
        assert last_end_first_batch < first_start_second_batch
        queue.shutdown()

    def test_fifo_order(self):
        order = []
        queue = RequestQueue(batch_size=1, pacing_delay=0, autostart=False)
        for i in range(5):
            queue.enqueue(lambda i=i: order.append(i))
        queue.drain()
        assert order == [0, 1, 2, 3, 4]
        queue.shutdown()

    def test_pacing_only_between_batches(self):
        sleeps = []
        queue = RequestQueue(batch_size=3, pacing_delay=0.05, autostart=False, sleep=sleeps.append)
        for i in range(7):
            queue.enqueue(lambda: None)
        queue.drain()
        assert sleeps == [0.05, 0.05]
        queue.shutdown()

    def test_autostart_drains_in_background(self):
        queue = RequestQueue(batch_size=5, pacing_delay=0)
        futures = [queue.submit(pow, 2, i) for i in range(12)]
        assert [f.result(timeout=TIMEOUT) for f in futures] == [2 ** i for i in range(12)]
        queue.shutdown()

    def test_enqueue_while_draining_uses_one_worker(self):
        release = threading.Event()
        queue = RequestQueue(batch_size=1, pacing_delay=0, name="solo-queue")
        first = queue.enqueue(lambda: release.wait(TIMEOUT))
        later = [queue.enqueue(lambda i=i: i) for i in range(3)]

        drainers = [t for t in threading.enumerate() if t.name == "solo-queue-drain"]
        assert len(drainers) == 1
        assert queue.is_draining

        release.set()
        assert first.result(timeout=TIMEOUT) is True
        assert [f.result(timeout=TIMEOUT) for f in later] == [0, 1, 2]
        queue.shutdown()

    def test_rejects_empty_batches(self):
        with pytest.raises(ValueError):
            RequestQueue(batch_size=0)


class TestIsolation:

    def test_failure_only_affects_its_own_future(self):
        def boom():
            raise RuntimeError("remote exploded")

        queue = RequestQueue(batch_size=3, pacing_delay=0, autostart=False)
        futures = [
            queue.enqueue(lambda: "a"),
            queue.enqueue(boom),
            queue.enqueue(lambda: "c"),
            queue.enqueue(lambda: "d"),
        ]
        queue.drain()

        assert futures[0].result() == "a"
        assert isinstance(futures[1].exception(), RuntimeError)
        assert futures[2].result() == "c"
        assert futures[3].result() == "d"
        assert queue.get_stats()["failed"] == 1
        queue.shutdown()

    def test_no_retry(self):
        attempts = []

        def flaky():
            attempts.append(1)
            raise ConnectionError("down")

        queue = RequestQueue(pacing_delay=0, autostart=False)
        future = queue.enqueue(flaky)
        queue.drain()
        assert isinstance(future.exception(), ConnectionError)
        assert len(attempts) == 1
        queue.shutdown()


class TestCancellation:

    def test_cancelled_before_dispatch_is_dropped(self):
        ran = []
        token = CancellationToken()
        queue = RequestQueue(pacing_delay=0, autostart=False)
        dropped = queue.enqueue(lambda: ran.append("dropped"), token=token)
        kept = queue.enqueue(lambda: ran.append("kept"))

        token.cancel()
        queue.drain()

        assert ran == ["kept"]
        assert isinstance(dropped.exception(), OperationCancelled)
        assert kept.exception() is None
        assert queue.get_stats()["dropped"] == 1
        queue.shutdown()

    def test_result_discarded_when_cancelled_while_running(self):
        started = threading.Event()
        release = threading.Event()
        token = CancellationToken()

        def slow():
            started.set()
            release.wait(TIMEOUT)
            return "late"

        queue = RequestQueue(pacing_delay=0)
        future = queue.enqueue(slow, token=token)
        assert started.wait(TIMEOUT)
        token.cancel()
        release.set()

        with pytest.raises(OperationCancelled):
            future.result(timeout=TIMEOUT)
        queue.shutdown()

    def test_caller_cancel_on_pending_future(self):
        ran = []
        queue = RequestQueue(pacing_delay=0, autostart=False)
        future = queue.enqueue(lambda: ran.append(1))
        assert future.cancel()
        queue.drain()
        assert ran == []
        assert future.cancelled()
        queue.shutdown()

    def test_token_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()


class TestShutdown:

    def test_enqueue_after_shutdown_is_refused(self):
        queue = RequestQueue(pacing_delay=0)
        queue.shutdown()
        with pytest.raises(RuntimeError):
            queue.enqueue(lambda: "late")
        assert not queue.is_draining

    def test_pending_items_fail_on_shutdown(self):
        ran = []
        queue = RequestQueue(pacing_delay=0, autostart=False)
        futures = [queue.enqueue(lambda: ran.append(1)) for _ in range(2)]

        queue.shutdown()

        assert ran == []
        assert queue.pending == 0
        for future in futures:
            assert isinstance(future.exception(timeout=TIMEOUT), OperationCancelled)
        assert queue.drain() == 0
