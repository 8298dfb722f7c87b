"""
Data orchestrator: cache-first snapshots, background refresh, role-gated
features, cancellation and partial failures.
"""
import threading
import time

import pytest

from lms_dashboard.cache import CacheManager, MemoryStore
from lms_dashboard.exceptions import LMSTransportError
from lms_dashboard.orchestrator import DataOrchestrator, Feature
from lms_dashboard.orchestrator.monitor import MAX_RECENT_ERRORS, LoadMonitor
from lms_dashboard.request_queue import RequestQueue
from lms_dashboard.roles import ResolvedRole
from lms_fakes import FakeClock, make_course, make_user

TIMEOUT = 5


class TestCacheFirst:

    def test_warm_cache_served_before_any_remote_call(self, seeded_lms, orchestrator, cache):
        cached_lessons = [{"id": "11", "title": "Equations (cached)"}]
        cache.set_cached_data("course_lessons_101_7", cached_lessons)

        seen = []

        def on_update(snapshot):
            seen.append((snapshot.source, snapshot.loading, seeded_lms.count(), snapshot.data))

        load = orchestrator.load(Feature.LESSONS, 7, on_update=on_update, course_id=101)
        # The cached update is delivered synchronously with zero remote calls
        assert seen[0] == ("cache", False, 0, cached_lessons)

        final = load.wait(TIMEOUT)
        assert seeded_lms.count("get_course_contents") == 1
        assert seeded_lms.count() == 1
        assert final.source == "network"
        assert [lesson["id"] for lesson in final.data] == ["11", "12"]
        assert cache.get_cached_data("course_lessons_101_7") == final.data

    def test_cold_cache_starts_loading(self, seeded_lms, orchestrator):
        seen = []
        load = orchestrator.load(Feature.ACTIVITIES, 7, on_update=seen.append, course_id=101)
        final = load.wait(TIMEOUT)

        assert len(seen) == 1
        assert final.loading is False
        assert [a["id"] for a in final.data] == ["1001", "1002", "1003"]
        assert [a["status"] for a in final.data] == ["completed", "in-progress", "not-started"]

    def test_users_never_share_entries(self, seeded_lms, orchestrator, cache):
        orchestrator.load(Feature.LESSONS, 7, course_id=101).wait(TIMEOUT)
        assert cache.get_cached_data("course_lessons_101_7") is not None
        assert cache.get_cached_data("course_lessons_101_8") is None

    def test_missing_params_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.load(Feature.LESSONS, 7)
        with pytest.raises(ValueError):
            orchestrator.load(Feature.LESSON_ACTIVITIES, 7, course_id=101)
        with pytest.raises(ValueError):
            orchestrator.load("timetable", 7)

    def test_feature_name_accepted(self, seeded_lms, orchestrator):
        snapshot = orchestrator.load("lessons", 7, course_id=102).wait(TIMEOUT)
        assert snapshot.data[0]["title"] == "Motion"


class TestPlaceholders:

    def test_student_without_courses_gets_placeholders(self, seeded_lms, orchestrator, cache):
        seeded_lms.add_user(make_user(20, "newkid", lastaccess=0), roles=["student"])

        snapshot = orchestrator.load(Feature.COURSES, 20).wait(TIMEOUT)

        assert snapshot.placeholder is True
        assert snapshot.source == "placeholder"
        assert len(snapshot.data) == 3
        assert all(course["placeholder"] for course in snapshot.data)
        # Placeholder data is never written to the cache
        assert cache.get_cached_data("user_courses_20") is None

    def test_teacher_without_courses_gets_empty_list(self, seeded_lms, orchestrator):
        seeded_lms.add_user(make_user(21, "mr_new", lastaccess=0), roles=["teacher"])
        snapshot = orchestrator.load(Feature.COURSES, 21).wait(TIMEOUT)
        assert snapshot.data == []
        assert snapshot.placeholder is False

    def test_enrolled_student_gets_real_courses(self, seeded_lms, orchestrator, cache):
        snapshot = orchestrator.load(Feature.COURSES, 7).wait(TIMEOUT)
        assert [course["title"] for course in snapshot.data] == ["Algebra", "Physics"]
        assert cache.get_cached_data("user_courses_7") == snapshot.data


class TestRefreshFailures:

    def test_failure_keeps_cached_data(self, seeded_lms, orchestrator, cache):
        stale = [{"id": "11", "title": "Stale"}]
        cache.set_cached_data("course_lessons_101_7", stale)
        seeded_lms.failures["get_course_contents"] = LMSTransportError("timed out")

        snapshot = orchestrator.load(Feature.LESSONS, 7, course_id=101).wait(TIMEOUT)

        assert snapshot.data == stale
        assert snapshot.error is None
        assert snapshot.loading is False
        assert orchestrator.monitor.get_stats()["errors"] == 1

    def test_failure_with_nothing_cached_sets_error(self, seeded_lms, orchestrator):
        seeded_lms.failures["get_course_contents"] = LMSTransportError("timed out")
        snapshot = orchestrator.load(Feature.LESSONS, 7, course_id=101).wait(TIMEOUT)

        assert snapshot.data is None
        assert snapshot.loading is False
        assert "timed out" in snapshot.error

    def test_unknown_user_resolves_to_default_role(self, seeded_lms, orchestrator, cache):
        snapshot = orchestrator.load(Feature.COURSES, 404).wait(TIMEOUT)
        assert snapshot.source == "placeholder"
        assert cache.get_cached_data("resolved_role_404") is None


class TestCancellation:

    def test_cancelled_load_writes_and_publishes_nothing(self, seeded_lms, orchestrator, cache):
        started = threading.Event()
        release = threading.Event()
        original = seeded_lms.get_course_contents

        def get_course_contents(course_id):
            started.set()
            release.wait(TIMEOUT)
            return original(course_id)

        seeded_lms.get_course_contents = get_course_contents
        updates = []
        load = orchestrator.load(Feature.LESSONS, 7, on_update=updates.append, course_id=101)
        assert started.wait(TIMEOUT)

        load.cancel()
        release.set()
        snapshot = load.wait(TIMEOUT)

        assert load.cancelled
        assert updates == []
        assert snapshot.loading is True
        assert cache.get_cached_data("course_lessons_101_7") is None

    def test_cancelled_before_dispatch(self, seeded_lms, cache):
        queue = RequestQueue(pacing_delay=0, autostart=False)
        orchestrator = DataOrchestrator(seeded_lms, cache, queue)
        load = orchestrator.load(Feature.LESSONS, 7, course_id=101)
        deadline = time.monotonic() + TIMEOUT
        while queue.pending == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

        load.cancel()
        assert queue.drain() == 1
        load.wait(TIMEOUT)

        assert seeded_lms.count("get_course_contents") == 0
        assert cache.get_cached_data("course_lessons_101_7") is None
        orchestrator.shutdown()


class TestCourseDetail:

    def test_sub_resources_cached_independently(self, seeded_lms, orchestrator, cache):
        snapshot = orchestrator.load(Feature.COURSE_DETAIL, 7, course_id=101).wait(TIMEOUT)

        assert snapshot.data["course"]["title"] == "Algebra"
        assert [lesson["id"] for lesson in snapshot.data["lessons"]] == ["11", "12"]
        assert len(snapshot.data["activities"]) == 3
        assert snapshot.data["completion"] == {
            "completed": False, "criteria": 0, "criteria_met": 0,
        }
        assert cache.get_cached_data("course_lessons_101_7") == snapshot.data["lessons"]
        assert cache.get_cached_data("course_activities_101_7") == snapshot.data["activities"]
        assert cache.get_session_data("course_101")["title"] == "Algebra"
        # Lessons and activities share one contents call
        assert seeded_lms.count("get_course_contents") == 1

    def test_partial_failure_falls_back_to_cached_parts(self, seeded_lms, orchestrator, cache):
        cache.set_cached_data("course_lessons_101_7", [{"id": "old-lesson"}])
        seeded_lms.failures["get_course_contents"] = LMSTransportError("contents down")

        snapshot = orchestrator.load(Feature.COURSE_DETAIL, 7, course_id=101).wait(TIMEOUT)

        assert snapshot.error is None
        assert snapshot.data["course"]["title"] == "Algebra"
        assert snapshot.data["lessons"] == [{"id": "old-lesson"}]
        assert snapshot.data["activities"] == []
        assert "contents" in snapshot.partial_errors

    def test_every_part_failing_is_an_error(self, seeded_lms, orchestrator):
        for name in ("get_courses_by_field", "get_course_contents", "get_completion_status"):
            seeded_lms.failures[name] = LMSTransportError("down")
        snapshot = orchestrator.load(Feature.COURSE_DETAIL, 7, course_id=101).wait(TIMEOUT)
        assert snapshot.data is None
        assert snapshot.error

    def test_remembered_course_renders_immediately(self, seeded_lms, orchestrator):
        orchestrator.remember_course(make_course(101, "Algebra (from list)"))
        seen = []
        load = orchestrator.load(Feature.COURSE_DETAIL, 7, on_update=seen.append, course_id=101)

        first = seen[0]
        assert first.source == "session"
        assert first.loading is True
        assert first.data["course"]["title"] == "Algebra (from list)"
        assert first.data["lessons"] == []

        assert load.wait(TIMEOUT).data["course"]["title"] == "Algebra"

    def test_lesson_activities(self, seeded_lms, orchestrator, cache):
        snapshot = orchestrator.load(
            Feature.LESSON_ACTIVITIES, 7, course_id=101, lesson_id=11
        ).wait(TIMEOUT)

        assert snapshot.data["lesson"]["title"] == "Equations"
        assert [a["id"] for a in snapshot.data["activities"]] == ["1001", "1002"]
        assert cache.get_session_data("lesson_11")["progress"] == 50

    def test_lesson_activities_outlive_activity_ttl(self, seeded_lms, queue):
        clock = FakeClock()
        cache = CacheManager(store=MemoryStore(), session_store=MemoryStore(), clock=clock)
        orchestrator = DataOrchestrator(seeded_lms, cache, queue)
        orchestrator.load(
            Feature.LESSON_ACTIVITIES, 7, course_id=101, lesson_id=11
        ).wait(TIMEOUT)

        clock.advance(4 * 60)
        assert cache.get_cached_data("lesson_activities_101_11_7") is not None
        clock.advance(6 * 60)
        assert cache.get_cached_data("lesson_activities_101_11_7") is None
        orchestrator.shutdown()

    def test_unknown_lesson_uses_remembered_lesson(self, seeded_lms, orchestrator):
        orchestrator.remember_lesson({"id": "99", "title": "Remembered"})
        snapshot = orchestrator.load(
            Feature.LESSON_ACTIVITIES, 7, course_id=101, lesson_id=99
        ).wait(TIMEOUT)
        assert snapshot.data == {"lesson": {"id": "99", "title": "Remembered"}, "activities": []}


class TestRoleGatedFeatures:

    def test_admin_sees_every_course_but_the_site(self, seeded_lms, orchestrator):
        snapshot = orchestrator.load(Feature.COURSES, 9).wait(TIMEOUT)
        assert [course["id"] for course in snapshot.data] == ["101", "102"]
        assert seeded_lms.count("get_user_courses") == 0

    def test_teacher_sees_enrolled_courses(self, seeded_lms, orchestrator):
        snapshot = orchestrator.load(Feature.COURSES, 8).wait(TIMEOUT)
        assert [course["id"] for course in snapshot.data] == ["101"]

    def test_student_assignments_carry_submission_status(self, seeded_lms, orchestrator):
        snapshot = orchestrator.load(Feature.ASSIGNMENTS, 7).wait(TIMEOUT)
        by_id = {row["id"]: row for row in snapshot.data}
        assert by_id["501"]["status"] == "submitted"
        assert by_id["502"]["status"] in ("pending", "overdue")

    def test_teacher_assignments_skip_submissions(self, seeded_lms, orchestrator):
        orchestrator.load(Feature.ASSIGNMENTS, 8).wait(TIMEOUT)
        assert seeded_lms.count("get_submissions") == 0


class TestDashboardBundle:

    def test_bundle(self, seeded_lms, orchestrator, cache):
        snapshot = orchestrator.load(Feature.DASHBOARD, 7).wait(TIMEOUT)
        data = snapshot.data

        assert [course["id"] for course in data["courses"]] == ["101", "102"]
        assert len(data["assignments"]) == 2
        assert len(data["activities"]) == 4
        assert data["stats"]["total_courses"] == 2
        assert data["stats"]["completed_courses"] == 1
        assert data["stats"]["pending_assignments"] == 1
        assert data["stats"]["completed_activities"] == 2
        assert data["placeholder"] is False
        assert cache.get_cached_data("dashboard_bundle_7") == data
        assert cache.get_cached_data("user_courses_7") == data["courses"]

    def test_course_limit(self, seeded_lms, cache, queue):
        orchestrator = DataOrchestrator(seeded_lms, cache, queue, dashboard_course_limit=1)
        orchestrator.load(Feature.DASHBOARD, 7).wait(TIMEOUT)
        assert seeded_lms.count("get_course_contents") == 1
        orchestrator.shutdown()

    def test_partial_failure(self, seeded_lms, orchestrator):
        seeded_lms.failures["get_assignments"] = LMSTransportError("assign down")
        snapshot = orchestrator.load(Feature.DASHBOARD, 7).wait(TIMEOUT)
        assert snapshot.data["assignments"] == []
        assert len(snapshot.data["courses"]) == 2
        assert "assignments" in snapshot.partial_errors


class TestRoleCaching:

    def test_resolved_role_is_cached(self, seeded_lms, orchestrator, cache):
        assert orchestrator.resolve_role(8) == ResolvedRole.TEACHER
        assert cache.get_cached_data("resolved_role_8") == "teacher"

        calls = seeded_lms.count()
        assert orchestrator.resolve_role(8) == ResolvedRole.TEACHER
        assert seeded_lms.count() == calls

    def test_role_not_cached_when_lookup_failed(self, seeded_lms, orchestrator, cache):
        seeded_lms.failures["get_user_roles"] = LMSTransportError("roles down")
        assert isinstance(orchestrator.resolve_role(8), ResolvedRole)
        assert cache.get_cached_data("resolved_role_8") is None

    def test_unknown_cached_role_is_ignored(self, seeded_lms, orchestrator, cache):
        cache.set_cached_data("resolved_role_9", "overlord")
        assert orchestrator.resolve_role(9) == ResolvedRole.ADMIN
        assert cache.get_cached_data("resolved_role_9") == "admin"

    def test_cached_role_gates_features(self, seeded_lms, orchestrator, cache):
        cache.set_cached_data("resolved_role_7", "admin")
        snapshot = orchestrator.load(Feature.COURSES, 7).wait(TIMEOUT)
        assert [course["id"] for course in snapshot.data] == ["101", "102"]
        assert seeded_lms.count("get_user_roles") == 0


class TestStats:

    def test_monitor_counts(self, seeded_lms, orchestrator, cache):
        cache.set_cached_data("course_lessons_101_7", [])
        orchestrator.load(Feature.LESSONS, 7, course_id=101).wait(TIMEOUT)
        orchestrator.load(Feature.LESSONS, 7, course_id=102).wait(TIMEOUT)

        stats = orchestrator.get_stats()
        loads = stats["loads"]
        assert loads["total_requests"] == 2
        assert loads["cache_hits"] == 1
        assert loads["api_calls"] == 2
        assert loads["cache_hit_rate_percent"] == 50.0
        assert loads["features"]["lessons"]["requests"] == 2
        assert stats["queue"]["completed"] == 2

    def test_clear_user(self, seeded_lms, orchestrator, cache):
        orchestrator.load(Feature.LESSONS, 7, course_id=101).wait(TIMEOUT)
        orchestrator.load(Feature.LESSONS, 8, course_id=101).wait(TIMEOUT)
        assert orchestrator.clear_user(7) == 1
        assert cache.get_cached_data("course_lessons_101_8") is not None

    def test_load_times_kept_as_running_totals(self):
        monitor = LoadMonitor()
        for _ in range(10_000):
            monitor.record_load_time(0.002)
        monitor.record_load_time(0.022)

        stats = monitor.get_stats()
        assert stats["timed_loads"] == 10_001
        assert stats["average_load_ms"] == 2.0
        assert not hasattr(monitor, "_load_times")

    def test_recent_errors_are_capped(self):
        monitor = LoadMonitor()
        for n in range(50):
            monitor.record_error("lessons", RuntimeError(f"boom {n}"))

        stats = monitor.get_stats()
        assert stats["errors"] == 50
        assert len(stats["recent_errors"]) == MAX_RECENT_ERRORS
        assert stats["recent_errors"][-1]["error"] == "boom 49"
