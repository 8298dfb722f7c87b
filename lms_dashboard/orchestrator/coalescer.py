"""
Call coalescing for queued remote calls.

When one load needs the same remote data for several sub-resources (a
course's lessons and its activities both come from the course contents),
only one queued call is made and every requester shares its future.
"""
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Hashable

logger = logging.getLogger("orchestrator.coalescer")


class CallCoalescer:
    """
    Shares an in-flight Future between identical requests.

    Usage:
        coalescer = CallCoalescer()
        future = coalescer.get_or_submit(
            key=("get_course_contents", 12, id(token)),
            submit_fn=lambda: queue.enqueue(operation, token),
        )
    """

    def __init__(self):
        self._in_flight: Dict[Hashable, Future] = {}
        self._lock = threading.Lock()
        self._coalesced = 0

    def get_or_submit(self, key: Hashable, submit_fn: Callable[[], Future]) -> Future:
        """
        Join the in-flight future for key, or start a new one.

        Args:
            key: Identity of the call
            submit_fn: Starts the call and returns its future

        Returns:
            Future shared by every concurrent requester of key
        """
        with self._lock:
            existing = self._in_flight.get(key)
            if existing is not None and not existing.done():
                self._coalesced += 1
                logger.debug(f"Coalescing call {key!r}")
                return existing
            future = submit_fn()
            self._in_flight[key] = future

        future.add_done_callback(lambda done: self._release(key, done))
        return future

    def _release(self, key: Hashable, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    @property
    def active_calls(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_calls": len(self._in_flight),
                "coalesced": self._coalesced,
            }
