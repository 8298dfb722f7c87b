"""
Dashboard features and how each one is keyed in the cache.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from lms_dashboard.cache import get_cache_key


class Feature(Enum):
    COURSES = "courses"
    LESSONS = "lessons"
    ACTIVITIES = "activities"
    COURSE_DETAIL = "course_detail"
    LESSON_ACTIVITIES = "lesson_activities"
    ASSIGNMENTS = "assignments"
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class FeatureSpec:
    """
    Static description of a feature.

    Attributes:
        cache_base: Base key; resource params and the user id are appended
        params: Required keyword parameters, in key order
        role_gated: Refresh must resolve the user's role first
        session_base: Session-tier prefix for the object the page navigated to
        session_param: Param naming that object
        session_part: Field of the payload the session object fills
    """
    feature: Feature
    cache_base: str
    params: Tuple[str, ...] = ()
    role_gated: bool = False
    session_base: Optional[str] = None
    session_param: Optional[str] = None
    session_part: Optional[str] = None

    def missing_params(self, params: Mapping[str, Any]) -> List[str]:
        return [name for name in self.params if params.get(name) in (None, "")]

    def cache_key(self, user_id: Any, params: Mapping[str, Any]) -> str:
        base = "_".join([self.cache_base] + [str(params[name]) for name in self.params])
        return get_cache_key(base, user_id)

    def session_key(self, params: Mapping[str, Any]) -> Optional[str]:
        if self.session_base is None:
            return None
        return session_key(self.session_base, params[self.session_param])


def session_key(base: str, resource_id: Any) -> str:
    """Session-tier keys are per resource, not per user."""
    return f"{base}_{resource_id}"


FEATURES: Dict[Feature, FeatureSpec] = {
    Feature.COURSES: FeatureSpec(
        Feature.COURSES, "user_courses", role_gated=True,
    ),
    Feature.LESSONS: FeatureSpec(
        Feature.LESSONS, "course_lessons", params=("course_id",),
    ),
    Feature.ACTIVITIES: FeatureSpec(
        Feature.ACTIVITIES, "course_activities", params=("course_id",),
    ),
    Feature.COURSE_DETAIL: FeatureSpec(
        Feature.COURSE_DETAIL,
        "course_detail",
        params=("course_id",),
        session_base="course",
        session_param="course_id",
        session_part="course",
    ),
    Feature.LESSON_ACTIVITIES: FeatureSpec(
        Feature.LESSON_ACTIVITIES,
        "lesson_activities",
        params=("course_id", "lesson_id"),
        session_base="lesson",
        session_param="lesson_id",
        session_part="lesson",
    ),
    Feature.ASSIGNMENTS: FeatureSpec(
        Feature.ASSIGNMENTS, "user_assignments", role_gated=True,
    ),
    Feature.DASHBOARD: FeatureSpec(
        Feature.DASHBOARD, "dashboard_bundle", role_gated=True,
    ),
}


def get_feature_spec(feature: Any) -> FeatureSpec:
    """Accepts a Feature or its string value."""
    if not isinstance(feature, Feature):
        feature = Feature(feature)
    return FEATURES[feature]
