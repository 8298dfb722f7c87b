"""
FIFO request batching queue.

Pending operations are dispatched in bounded batches; a batch runs
concurrently and the next batch starts only after every operation of the
previous one has settled, separated by a short pacing delay.
"""
import logging
import threading
import time
from collections import deque
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from lms_dashboard.exceptions import OperationCancelled

logger = logging.getLogger("request_queue")


class CancellationToken:
    """
    Signals that the caller no longer wants the results of its operations.

    Pending operations bound to a cancelled token are dropped; results of
    operations that were already running are discarded.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation abandoned by caller")


@dataclass
class QueueItem:
    """A pending operation and the future its caller holds."""
    operation: Callable[[], Any]
    future: Future = field(default_factory=Future)
    token: Optional[CancellationToken] = None
    enqueued_at: float = field(default_factory=time.monotonic)

    @property
    def abandoned(self) -> bool:
        return self.token is not None and self.token.cancelled


class RequestQueue:
    """
    Admission-controlled scheduler for remote calls.

    Usage:
        queue = RequestQueue(batch_size=3)
        future = queue.enqueue(lambda: client.get_user_courses(7))
        courses = future.result()
    """

    def __init__(
        self,
        batch_size: int = 3,
        pacing_delay: float = 0.05,
        autostart: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "request-queue",
    ):
        """
        Args:
            batch_size: Max operations dispatched together
            pacing_delay: Seconds to wait between batches
            autostart: Start a drain worker on enqueue; when False the owner
                calls drain() itself
            sleep: Pacing function (injectable for tests)
            name: Thread name prefix
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.pacing_delay = pacing_delay
        self.autostart = autostart
        self.name = name
        self._sleep = sleep

        self._pending: Deque[QueueItem] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=batch_size,
            thread_name_prefix=f"{name}-op",
        )

        self._running = 0
        self._stats = {
            "enqueued": 0,
            "completed": 0,
            "failed": 0,
            "dropped": 0,
            "batches": 0,
            "max_concurrency": 0,
        }

    def enqueue(
        self,
        operation: Callable[[], Any],
        token: Optional[CancellationToken] = None,
    ) -> Future:
        """
        Append an operation; the returned future settles with its outcome.

        Args:
            operation: Zero-argument callable performing one remote call
            token: Optional cancellation token for the calling feature

        Returns:
            Future resolved with the operation's result or exception

        Raises:
            RuntimeError: The queue has been shut down
        """
        item = QueueItem(operation=operation, token=token)
        start_worker = False
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} is shut down")
            self._pending.append(item)
            self._stats["enqueued"] += 1
            if not self._draining and self.autostart:
                self._draining = True
                start_worker = True

        if start_worker:
            worker = threading.Thread(
                target=self._drain_loop,
                name=f"{self.name}-drain",
                daemon=True,
            )
            worker.start()
        return item.future

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        token: Optional[CancellationToken] = None,
        **kwargs: Any,
    ) -> Future:
        """Bind arguments into a zero-argument operation and enqueue it."""
        return self.enqueue(lambda: fn(*args, **kwargs), token=token)

    def drain(self) -> int:
        """
        Process pending items in the calling thread until the queue is empty.

        Returns:
            Number of batches dispatched
        """
        with self._lock:
            if self._draining:
                return 0
            self._draining = True
        return self._drain_loop()

    def _drain_loop(self) -> int:
        batches = 0
        while True:
            with self._lock:
                if not self._pending:
                    self._draining = False
                    return batches
                take = min(self.batch_size, len(self._pending))
                batch = [self._pending.popleft() for _ in range(take)]

            self._run_batch(batch)
            batches += 1

            with self._lock:
                more = bool(self._pending)
            if more and self.pacing_delay > 0:
                self._sleep(self.pacing_delay)

    def _run_batch(self, batch: List[QueueItem]) -> None:
        runnable = []
        for item in batch:
            if item.abandoned:
                self._drop(item)
                continue
            # Caller-side future.cancel() on a pending item
            if not item.future.set_running_or_notify_cancel():
                self._drop(item, notify=False)
                continue
            runnable.append(item)

        with self._lock:
            self._stats["batches"] += 1

        if not runnable:
            return

        logger.debug(f"Dispatching batch of {len(runnable)} (pending={self.pending})")
        inner = []
        for item in runnable:
            try:
                inner.append(self._executor.submit(self._execute, item))
            except RuntimeError as e:
                # Executor shut down underneath a running drain
                with self._lock:
                    self._stats["failed"] += 1
                item.future.set_exception(e)
        # All-settled join: _execute never raises, one failure cannot cancel siblings
        wait(inner, return_when=ALL_COMPLETED)

    def _execute(self, item: QueueItem) -> None:
        with self._lock:
            self._running += 1
            if self._running > self._stats["max_concurrency"]:
                self._stats["max_concurrency"] = self._running
        try:
            result = item.operation()
        except Exception as e:
            outcome_error: Optional[BaseException] = e
            result = None
        else:
            outcome_error = None
        finally:
            with self._lock:
                self._running -= 1

        if item.abandoned:
            with self._lock:
                self._stats["dropped"] += 1
            item.future.set_exception(OperationCancelled("result discarded after cancellation"))
            return

        if outcome_error is not None:
            with self._lock:
                self._stats["failed"] += 1
            logger.debug(f"Queued operation failed: {outcome_error!r}")
            item.future.set_exception(outcome_error)
        else:
            with self._lock:
                self._stats["completed"] += 1
            item.future.set_result(result)

    def _drop(self, item: QueueItem, notify: bool = True) -> None:
        with self._lock:
            self._stats["dropped"] += 1
        if notify and item.future.set_running_or_notify_cancel():
            item.future.set_exception(OperationCancelled("dropped before dispatch"))

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def is_draining(self) -> bool:
        with self._lock:
            return self._draining

    def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        with self._lock:
            return {
                **self._stats,
                "pending": len(self._pending),
                "draining": self._draining,
                "batch_size": self.batch_size,
            }

    def shutdown(self) -> None:
        """Refuse new work and fail everything still pending."""
        with self._lock:
            self._closed = True
            abandoned = list(self._pending)
            self._pending.clear()
        for item in abandoned:
            self._drop(item)
        self._executor.shutdown(wait=False)
