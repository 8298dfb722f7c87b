"""
Core cache data structures.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class DataCategory(Enum):
    """Classes of dashboard data with different freshness requirements."""
    LESSONS = "lessons"                   # 5 minutes
    COURSES = "courses"                   # 10 minutes
    ACTIVITIES = "activities"             # 3 minutes
    DASHBOARD = "dashboard"               # 15 minutes, full bundle
    COURSE_DETAIL = "course_detail"       # 15 minutes
    LESSON_DETAIL = "lesson_detail"       # 10 minutes
    ASSIGNMENTS = "assignments"           # 10 minutes
    RESOLVED_ROLE = "resolved_role"       # 30 minutes
    USER_PROFILE = "user_profile"         # 30 minutes
    DEFAULT = "default"                   # 5 minutes


class CacheTier(Enum):
    """Where a cached payload was found."""
    SESSION = "session"   # per-visit scratch store, no expiry
    TTL = "ttl"           # persistent store, TTL-bounded


class CorruptEntry(ValueError):
    """Stored value could not be decoded into a CacheEntry."""


@dataclass
class CacheEntry:
    """
    A cached payload with the time it was written.

    Serialized as {"data": ..., "timestamp": <epoch milliseconds>}.
    """
    data: Any
    written_at_ms: int

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.written_at_ms

    def is_valid(self, now_ms: int, ttl_ms: int) -> bool:
        """An entry is valid iff now - written_at < ttl."""
        return self.age_ms(now_ms) < ttl_ms

    def dumps(self) -> str:
        return json.dumps({"data": self.data, "timestamp": self.written_at_ms})

    @classmethod
    def loads(cls, raw: str) -> "CacheEntry":
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorruptEntry(str(e)) from e
        if not isinstance(decoded, dict) or "data" not in decoded:
            raise CorruptEntry("missing data field")
        timestamp = decoded.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise CorruptEntry("missing or non-numeric timestamp")
        return cls(data=decoded["data"], written_at_ms=int(timestamp))


def decode_session_value(raw: Optional[str]) -> Any:
    """Session tier values are bare JSON documents."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CorruptEntry(str(e)) from e
