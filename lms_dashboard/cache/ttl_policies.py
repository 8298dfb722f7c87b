"""
TTL configuration and cache-key-to-category mapping.
"""
from typing import Dict, Optional, Tuple

from .core import DataCategory


MINUTE = 60

# TTL by category (in seconds)
TTL_CONFIG: Dict[DataCategory, int] = {
    DataCategory.LESSONS: 5 * MINUTE,
    DataCategory.COURSES: 10 * MINUTE,
    DataCategory.ACTIVITIES: 3 * MINUTE,
    DataCategory.DASHBOARD: 15 * MINUTE,
    DataCategory.COURSE_DETAIL: 15 * MINUTE,
    DataCategory.LESSON_DETAIL: 10 * MINUTE,
    DataCategory.ASSIGNMENTS: 10 * MINUTE,
    DataCategory.RESOLVED_ROLE: 30 * MINUTE,
    DataCategory.USER_PROFILE: 30 * MINUTE,
    DataCategory.DEFAULT: 5 * MINUTE,
}


# Base key names used by the orchestrator, checked longest-prefix first
CACHE_KEYS: Dict[str, DataCategory] = {
    "user_courses": DataCategory.COURSES,
    "course_lessons": DataCategory.LESSONS,
    "course_activities": DataCategory.ACTIVITIES,
    "lesson_activities": DataCategory.LESSON_DETAIL,
    "course_detail": DataCategory.COURSE_DETAIL,
    "user_assignments": DataCategory.ASSIGNMENTS,
    "dashboard_bundle": DataCategory.DASHBOARD,
    "resolved_role": DataCategory.RESOLVED_ROLE,
    "user_profile": DataCategory.USER_PROFILE,
}

_PREFIXES: Tuple[str, ...] = tuple(sorted(CACHE_KEYS, key=len, reverse=True))


def get_ttl_for_category(category: DataCategory) -> int:
    """TTL in seconds for a data category."""
    return TTL_CONFIG.get(category, TTL_CONFIG[DataCategory.DEFAULT])


def get_category_for_key(key: str) -> DataCategory:
    """
    Determine the data category of a namespaced cache key.

    Keys look like "<base>_<user id>" or "<base>_<resource id>_<user id>".
    """
    for prefix in _PREFIXES:
        if key == prefix or key.startswith(prefix + "_"):
            return CACHE_KEYS[prefix]
    return DataCategory.DEFAULT


def get_ttl_for_key(key: str, override: Optional[int] = None) -> int:
    """TTL in seconds for a cache key, honouring an explicit override."""
    if override is not None:
        return override
    return get_ttl_for_category(get_category_for_key(key))
