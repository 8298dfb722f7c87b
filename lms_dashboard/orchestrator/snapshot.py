"""
UI-visible state of one feature load.
"""
import copy
import logging
import threading
import time
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, Optional

from lms_dashboard.request_queue import CancellationToken

from .features import Feature

logger = logging.getLogger("orchestrator.snapshot")


@dataclass
class FeatureSnapshot:
    """
    What a view renders for a feature.

    source is "session", "cache", "network" or "placeholder". error is only
    set when a refresh failed and there is no data to show.
    """
    feature: Feature
    user_id: str
    key: str
    data: Any = None
    loading: bool = True
    source: Optional[str] = None
    error: Optional[str] = None
    placeholder: bool = False
    partial_errors: Dict[str, str] = field(default_factory=dict)
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["feature"] = self.feature.value
        return data


UpdateCallback = Callable[[FeatureSnapshot], None]


class FeatureLoad:
    """
    Handle on an in-progress load: the current snapshot, the background
    refresh, and a way to abandon it.
    """

    def __init__(
        self,
        snapshot: FeatureSnapshot,
        token: Optional[CancellationToken] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        self._snapshot = snapshot
        self._lock = threading.Lock()
        self.token = token or CancellationToken()
        self._on_update = on_update
        self._future: Optional[Future] = None

    @property
    def snapshot(self) -> FeatureSnapshot:
        with self._lock:
            return copy.deepcopy(self._snapshot)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def done(self) -> bool:
        return self._future is None or self._future.done()

    def attach(self, future: Future) -> None:
        self._future = future

    def publish(self, **changes: Any) -> bool:
        """
        Apply changes to the snapshot and notify the listener.

        Returns:
            False if the load was cancelled and nothing changed
        """
        if self.token.cancelled:
            return False
        with self._lock:
            self._snapshot = replace(self._snapshot, updated_at=time.time(), **changes)
            current = copy.deepcopy(self._snapshot)
        if self._on_update is not None:
            try:
                self._on_update(current)
            except Exception as e:
                logger.warning(f"Update callback failed for {current.key}: {e}")
        return True

    def wait(self, timeout: Optional[float] = None) -> FeatureSnapshot:
        """Block until the refresh settles (or timeout) and return the snapshot."""
        if self._future is not None:
            try:
                self._future.result(timeout=timeout)
            except (FuturesTimeout, CancelledError):
                pass
        return self.snapshot

    def cancel(self) -> None:
        """Abandon the refresh: no further cache writes or snapshot updates."""
        self.token.cancel()
        if self._future is not None:
            self._future.cancel()
