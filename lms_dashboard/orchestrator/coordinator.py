"""
Data orchestrator: per-feature coordinators composing the cache, the
request queue and role resolution.

load() serves whatever the cache holds synchronously and always schedules
a background refresh. Refresh jobs run on the orchestrator's own pool and
route every remote call through the request queue.
"""
import logging
import time
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from lms_dashboard import schemas
from lms_dashboard.api_client import LMSClient
from lms_dashboard.cache import CacheManager, get_cache_key
from lms_dashboard.exceptions import OperationCancelled
from lms_dashboard.request_queue import CancellationToken, RequestQueue
from lms_dashboard.roles import DEFAULT_ROLE, ResolvedRole, RoleResolver, RoleRule
from lms_dashboard.view_models import (
    CourseView,
    LessonView,
    assignments_to_payload,
    courses_to_payload,
    placeholder_courses,
    sections_to_activities,
    sections_to_lessons,
)

from .coalescer import CallCoalescer
from .features import Feature, FeatureSpec, get_feature_spec, session_key
from .monitor import LoadMonitor
from .snapshot import FeatureLoad, FeatureSnapshot, UpdateCallback

logger = logging.getLogger("orchestrator")

ALL_COURSES_ROLES = (ResolvedRole.ADMIN, ResolvedRole.SCHOOL_ADMIN)


class RefreshResult:
    """Outcome of one successful feature fetch."""

    def __init__(
        self,
        data: Any,
        placeholder: bool = False,
        partial_errors: Optional[Dict[str, Exception]] = None,
    ):
        self.data = data
        self.placeholder = placeholder
        self.partial_errors = partial_errors or {}


def _empty_payload(spec: FeatureSpec) -> Dict[str, Any]:
    if spec.feature == Feature.COURSE_DETAIL:
        return {"course": None, "lessons": [], "activities": [], "completion": None}
    return {"lesson": None, "activities": []}


class DataOrchestrator:
    """
    Coordinates dashboard feature loads.

    Usage:
        orchestrator = DataOrchestrator(client, cache, queue)
        load = orchestrator.load(Feature.LESSONS, user_id=7, course_id=12)
        render(load.snapshot)            # cached data, if any
        render(load.wait(timeout=15))    # after the refresh
    """

    def __init__(
        self,
        client: LMSClient,
        cache: CacheManager,
        queue: RequestQueue,
        monitor: Optional[LoadMonitor] = None,
        role_rules: Optional[Sequence[RoleRule]] = None,
        refresh_workers: int = 4,
        dashboard_course_limit: int = 3,
    ):
        """
        Args:
            client: LMS client; only ever called from queued operations
            cache: Tiered cache for snapshots and sub-resources
            queue: Batching queue every remote call goes through
            monitor: Load telemetry sink
            role_rules: Role cascade; defaults to the full cascade
            refresh_workers: Thread pool size for background refreshes
            dashboard_course_limit: Courses whose activities the dashboard loads
        """
        self.client = client
        self.cache = cache
        self.queue = queue
        self.monitor = monitor or LoadMonitor()
        self.role_rules = role_rules
        self.dashboard_course_limit = dashboard_course_limit
        self._coalescer = CallCoalescer()
        self._refresh_pool = ThreadPoolExecutor(
            max_workers=refresh_workers,
            thread_name_prefix="orchestrator-refresh",
        )

        self._fetchers: Dict[Feature, Callable[..., RefreshResult]] = {
            Feature.COURSES: self._fetch_courses,
            Feature.LESSONS: self._fetch_lessons,
            Feature.ACTIVITIES: self._fetch_activities,
            Feature.COURSE_DETAIL: self._fetch_course_detail,
            Feature.LESSON_ACTIVITIES: self._fetch_lesson_activities,
            Feature.ASSIGNMENTS: self._fetch_assignments,
            Feature.DASHBOARD: self._fetch_dashboard,
        }

    # ===== PUBLIC API =====

    def load(
        self,
        feature: Any,
        user_id: Any,
        on_update: Optional[UpdateCallback] = None,
        **params: Any,
    ) -> FeatureLoad:
        """
        Start loading a feature for a user.

        A cached snapshot is published (and on_update fired) before this
        returns; the refresh always runs in the background.

        Raises:
            ValueError: Unknown feature or missing resource params
        """
        spec = get_feature_spec(feature)
        missing = spec.missing_params(params)
        if missing:
            raise ValueError(f"{spec.feature.value} requires {', '.join(missing)}")

        key = spec.cache_key(user_id, params)
        self.monitor.record_request(spec.feature.value)
        load = FeatureLoad(
            FeatureSnapshot(feature=spec.feature, user_id=str(user_id), key=key),
            on_update=on_update,
        )

        data, source = self._initial_data(spec, key, params)
        if data is not None:
            if source == "cache":
                self.monitor.record_cache_hit(spec.feature.value)
            logger.debug(f"Serving {key} from {source}")
            load.publish(data=data, source=source, loading=source != "cache")

        started = time.monotonic()
        load.attach(
            self._refresh_pool.submit(self._refresh, load, spec, user_id, params, started)
        )
        return load

    def remember_course(self, course: Any) -> None:
        """Prime the session tier with a course the user just navigated to."""
        payload = self._as_view_dict(course, CourseView.from_course)
        self.cache.set_session_data(session_key("course", payload["id"]), payload)

    def remember_lesson(self, lesson: Any) -> None:
        """Prime the session tier with a lesson the user just navigated to."""
        payload = lesson.to_dict() if isinstance(lesson, LessonView) else dict(lesson)
        self.cache.set_session_data(session_key("lesson", payload["id"]), payload)

    def resolve_role(
        self,
        user_id: Any,
        user: Optional[schemas.UserRecord] = None,
        token: Optional[CancellationToken] = None,
    ) -> ResolvedRole:
        """
        Resolve a user's role, consulting the cached last-resolved role first.

        Never raises except OperationCancelled. A role decided while a lookup
        was failing is used but not cached.
        """
        key = get_cache_key("resolved_role", user_id)
        cached = self.cache.get_cached_data(key)
        if cached is not None:
            try:
                return ResolvedRole(cached)
            except ValueError:
                logger.warning(f"Ignoring unknown cached role {cached!r} for user {user_id}")
                self.cache.invalidate(key)

        token = token or CancellationToken()
        if user is None:
            try:
                user = self._call(token, self.client.get_user, user_id).result()
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"User lookup failed for {user_id}: {e}")
        if user is None:
            token.raise_if_cancelled()
            logger.info(f"No user record for {user_id}, using {DEFAULT_ROLE.value}")
            return DEFAULT_ROLE

        resolver = RoleResolver(
            rules=self.role_rules,
            role_fetcher=lambda uid: self._call(token, self.client.get_user_roles, uid).result(),
            enrollment_fetcher=lambda uid: len(
                self._call(token, self.client.get_user_courses, uid).result()
            ),
        )
        resolution = resolver.explain(user.username, user)
        token.raise_if_cancelled()

        if not resolution.failed_lookups:
            self.cache.set_cached_data(key, resolution.role.value)
        return resolution.role

    def clear_user(self, user_id: Any) -> int:
        return self.cache.clear_user(user_id)

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            "loads": self.monitor.get_stats(),
            "queue": self.queue.get_stats(),
            "cache": self.cache.get_stats(),
            "coalescer": self._coalescer.get_stats(),
        }

    def shutdown(self) -> None:
        self._refresh_pool.shutdown(wait=False, cancel_futures=True)
        self.queue.shutdown()

    # ===== SNAPSHOT PIPELINE =====

    def _initial_data(
        self,
        spec: FeatureSpec,
        key: str,
        params: Dict[str, Any],
    ) -> Tuple[Optional[Any], Optional[str]]:
        """Session tier first, then the TTL tier."""
        cached = self.cache.get_cached_data(key)
        skey = spec.session_key(params)
        if skey is None:
            return (cached, "cache") if cached is not None else (None, None)

        remembered = self.cache.get_session_data(skey)
        if cached is not None:
            if remembered is not None:
                cached[spec.session_part] = remembered
            return cached, "cache"
        if remembered is not None:
            payload = _empty_payload(spec)
            payload[spec.session_part] = remembered
            return payload, "session"
        return None, None

    def _refresh(
        self,
        load: FeatureLoad,
        spec: FeatureSpec,
        user_id: Any,
        params: Dict[str, Any],
        started: float,
    ) -> None:
        key = load.snapshot.key
        token = load.token
        try:
            role = self.resolve_role(user_id, token=token) if spec.role_gated else None
            result = self._fetchers[spec.feature](user_id, role, token, **params)
            token.raise_if_cancelled()
        except OperationCancelled:
            logger.debug(f"Refresh abandoned: {key}")
            return
        except Exception as e:
            self.monitor.record_error(spec.feature.value, e)
            self.monitor.record_load_time(time.monotonic() - started)
            if load.snapshot.data is not None:
                logger.warning(f"Refresh failed for {key}, keeping cached data: {e}")
                load.publish(loading=False)
            else:
                logger.error(f"Refresh failed for {key} with nothing cached: {e}")
                load.publish(loading=False, error=str(e))
            return

        if result.placeholder:
            self.cache.invalidate(key)
        else:
            self.cache.set_cached_data(key, result.data)

        for name, error in result.partial_errors.items():
            self.monitor.record_error(f"{spec.feature.value}.{name}", error)
        self.monitor.record_load_time(time.monotonic() - started)

        load.publish(
            data=result.data,
            loading=False,
            source="placeholder" if result.placeholder else "network",
            error=None,
            placeholder=result.placeholder,
            partial_errors={name: str(e) for name, e in result.partial_errors.items()},
        )
        logger.info(f"Refreshed {key}")

    # ===== REMOTE CALLS =====

    def _call(self, token: CancellationToken, fn: Callable[..., Any], *args: Any) -> Future:
        """Queue one remote call, sharing it with identical calls of the same load."""
        name = getattr(fn, "__name__", repr(fn))

        def operation():
            self.monitor.record_api_call()
            return fn(*args)

        return self._coalescer.get_or_submit(
            (name, repr(args), id(token)),
            lambda: self.queue.enqueue(operation, token=token),
        )

    def _settle(self, futures: Dict[str, Future]) -> Tuple[Dict[str, Any], Dict[str, Exception]]:
        """All-settled join over named futures."""
        wait(list(futures.values()), return_when=ALL_COMPLETED)
        results: Dict[str, Any] = {}
        errors: Dict[str, Exception] = {}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"Sub-resource {name} failed: {e}")
                errors[name] = e
        return results, errors

    def _store(self, token: CancellationToken, key: str, payload: Any) -> None:
        if not token.cancelled:
            self.cache.set_cached_data(key, payload)

    def _role_courses(
        self,
        user_id: Any,
        role: Optional[ResolvedRole],
        token: CancellationToken,
    ) -> List[schemas.Course]:
        """Enrolled courses for students and teachers, every course for admins."""
        if role in ALL_COURSES_ROLES:
            courses = self._call(token, self.client.get_courses_by_field).result()
            return [c for c in courses if c.format != "site"]
        return self._call(token, self.client.get_user_courses, user_id).result()

    @staticmethod
    def _as_view_dict(value: Any, transform: Callable[[Any], Any]) -> Dict[str, Any]:
        if isinstance(value, dict):
            return dict(value)
        if isinstance(value, schemas.Course):
            return transform(value).to_dict()
        return value.to_dict()

    # ===== FEATURE FETCHERS =====

    def _fetch_courses(self, user_id, role, token, **_) -> RefreshResult:
        courses = courses_to_payload(self._role_courses(user_id, role, token))
        if not courses and role == ResolvedRole.STUDENT:
            logger.info(f"No enrolled courses for user {user_id}, using placeholders")
            return RefreshResult(placeholder_courses(), placeholder=True)
        return RefreshResult(courses)

    def _fetch_lessons(self, user_id, role, token, course_id=None, **_) -> RefreshResult:
        sections = self._call(token, self.client.get_course_contents, course_id).result()
        return RefreshResult(sections_to_lessons(sections, course_id))

    def _fetch_activities(self, user_id, role, token, course_id=None, **_) -> RefreshResult:
        sections = self._call(token, self.client.get_course_contents, course_id).result()
        return RefreshResult(sections_to_activities(sections, course_id))

    def _fetch_course_detail(self, user_id, role, token, course_id=None, **_) -> RefreshResult:
        results, errors = self._settle({
            "course": self._call(token, self.client.get_courses_by_field, "id", course_id),
            "contents": self._call(token, self.client.get_course_contents, course_id),
            "completion": self._call(
                token, self.client.get_completion_status, course_id, user_id
            ),
        })
        if len(errors) == 3:
            raise errors["contents"]

        course_skey = session_key("course", course_id)
        lessons_key = get_cache_key(f"course_lessons_{course_id}", user_id)
        activities_key = get_cache_key(f"course_activities_{course_id}", user_id)
        data = _empty_payload(get_feature_spec(Feature.COURSE_DETAIL))

        if "course" in results:
            if results["course"]:
                data["course"] = CourseView.from_course(results["course"][0]).to_dict()
                if not token.cancelled:
                    self.cache.set_session_data(course_skey, data["course"])
        else:
            data["course"] = self.cache.get_session_data(course_skey)

        if "contents" in results:
            data["lessons"] = sections_to_lessons(results["contents"], course_id)
            data["activities"] = sections_to_activities(results["contents"], course_id)
            self._store(token, lessons_key, data["lessons"])
            self._store(token, activities_key, data["activities"])
        else:
            data["lessons"] = self.cache.get_cached_data(lessons_key) or []
            data["activities"] = self.cache.get_cached_data(activities_key) or []

        if "completion" in results:
            status = results["completion"]
            data["completion"] = {
                "completed": status.completed,
                "criteria": len(status.completions),
                "criteria_met": sum(1 for c in status.completions if c.complete),
            }

        return RefreshResult(data, partial_errors=errors)

    def _fetch_lesson_activities(
        self, user_id, role, token, course_id=None, lesson_id=None, **_
    ) -> RefreshResult:
        sections = self._call(token, self.client.get_course_contents, course_id).result()
        lesson_skey = session_key("lesson", lesson_id)
        data = _empty_payload(get_feature_spec(Feature.LESSON_ACTIVITIES))

        section = next((s for s in sections if str(s.id) == str(lesson_id)), None)
        if section is None:
            logger.warning(f"Lesson {lesson_id} not found in course {course_id}")
            data["lesson"] = self.cache.get_session_data(lesson_skey)
            return RefreshResult(data)

        lesson = LessonView.from_section(section, course_id)
        data["lesson"] = lesson.to_dict()
        data["activities"] = [a.to_dict() for a in lesson.activities]
        if not token.cancelled:
            self.cache.set_session_data(lesson_skey, data["lesson"])
        return RefreshResult(data)

    def _assignments_for(
        self,
        user_id: Any,
        role: Optional[ResolvedRole],
        token: CancellationToken,
        course_ids: List[Any],
    ) -> List[Dict[str, Any]]:
        if not course_ids:
            return []
        groups = self._call(token, self.client.get_assignments, course_ids).result()
        assignment_ids = [a.id for group in groups for a in group.assignments]

        statuses: Dict[int, str] = {}
        if assignment_ids and role == ResolvedRole.STUDENT:
            try:
                listing = self._call(token, self.client.get_submissions, assignment_ids).result()
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"Submission lookup failed for user {user_id}: {e}")
            else:
                for entry in listing:
                    for submission in entry.submissions:
                        if str(submission.userid) == str(user_id):
                            statuses[entry.assignmentid] = submission.status
        return assignments_to_payload(groups, statuses)

    def _fetch_assignments(self, user_id, role, token, **_) -> RefreshResult:
        course_ids = [c.id for c in self._role_courses(user_id, role, token)]
        return RefreshResult(self._assignments_for(user_id, role, token, course_ids))

    def _fetch_dashboard(self, user_id, role, token, **_) -> RefreshResult:
        """Courses, assignments and activities, each settled independently."""
        started = time.monotonic()
        errors: Dict[str, Exception] = {}
        courses_key = get_cache_key("user_courses", user_id)

        placeholder = False
        try:
            courses_result = self._fetch_courses(user_id, role, token)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Dashboard courses failed for user {user_id}: {e}")
            errors["courses"] = e
            courses = self.cache.get_cached_data(courses_key) or []
        else:
            courses = courses_result.data
            placeholder = courses_result.placeholder
            if not placeholder:
                self._store(token, courses_key, courses)

        course_ids = [
            c["id"] for c in courses if not c.get("placeholder")
        ][: self.dashboard_course_limit]
        contents = {
            cid: self._call(token, self.client.get_course_contents, cid) for cid in course_ids
        }

        try:
            assignments = self._assignments_for(user_id, role, token, course_ids)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Dashboard assignments failed for user {user_id}: {e}")
            errors["assignments"] = e
            assignments = []

        settled, content_errors = self._settle({str(cid): f for cid, f in contents.items()})
        activities: List[Dict[str, Any]] = []
        for cid in course_ids:
            activities_key = get_cache_key(f"course_activities_{cid}", user_id)
            if str(cid) in settled:
                course_activities = sections_to_activities(settled[str(cid)], cid)
                self._store(token, activities_key, course_activities)
            else:
                course_activities = self.cache.get_cached_data(activities_key) or []
            activities.extend(course_activities)
        if content_errors:
            errors["activities"] = next(iter(content_errors.values()))

        if "courses" in errors and "assignments" in errors and "activities" in errors:
            raise errors["courses"]

        data = {
            "courses": courses,
            "assignments": assignments,
            "activities": activities,
            "stats": {
                "total_courses": len([c for c in courses if not c.get("placeholder")]),
                "completed_courses": sum(1 for c in courses if (c.get("progress") or 0) >= 100),
                "pending_assignments": sum(1 for a in assignments if a["status"] != "submitted"),
                "completed_activities": sum(1 for a in activities if a["status"] == "completed"),
            },
            "placeholder": placeholder,
            "load_time_ms": int((time.monotonic() - started) * 1000),
        }
        return RefreshResult(data, partial_errors=errors)
