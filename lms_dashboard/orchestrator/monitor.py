"""
Load telemetry: requests, cache hits, remote calls, errors and load times.
"""
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List

logger = logging.getLogger("orchestrator.monitor")

MAX_RECENT_ERRORS = 20


class LoadMonitor:
    """Thread-safe counters for feature loads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self._requests = 0
        self._cache_hits = 0
        self._api_calls = 0
        self._errors = 0
        self._load_total = 0.0
        self._load_count = 0
        self._per_feature: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"requests": 0, "cache_hits": 0, "errors": 0}
        )
        self._recent_errors: List[Dict[str, str]] = []

    def record_request(self, feature: str) -> None:
        with self._lock:
            self._requests += 1
            self._per_feature[feature]["requests"] += 1

    def record_cache_hit(self, feature: str) -> None:
        with self._lock:
            self._cache_hits += 1
            self._per_feature[feature]["cache_hits"] += 1

    def record_api_call(self) -> None:
        with self._lock:
            self._api_calls += 1

    def record_error(self, feature: str, error: Exception) -> None:
        with self._lock:
            self._errors += 1
            self._per_feature[feature]["errors"] += 1
            self._recent_errors.append({"feature": feature, "error": str(error)})
            del self._recent_errors[:-MAX_RECENT_ERRORS]

    def record_load_time(self, seconds: float) -> None:
        with self._lock:
            self._load_total += seconds
            self._load_count += 1

    def reset(self) -> None:
        with self._lock:
            self._reset()

    def get_stats(self) -> Dict[str, Any]:
        """Get load statistics."""
        with self._lock:
            average = self._load_total / self._load_count * 1000 if self._load_count else 0
            return {
                "total_requests": self._requests,
                "cache_hits": self._cache_hits,
                "api_calls": self._api_calls,
                "errors": self._errors,
                "cache_hit_rate_percent": (
                    round(self._cache_hits / self._requests * 100, 1) if self._requests else 0
                ),
                "average_load_ms": round(average, 1),
                "timed_loads": self._load_count,
                "features": {name: dict(counts) for name, counts in self._per_feature.items()},
                "recent_errors": list(self._recent_errors),
            }
