"""
Shared fixtures: an in-memory LMS, isolated caches and queues.
"""
import pytest

from config.settings import Settings
from lms_dashboard.cache import CacheManager, MemoryStore
from lms_dashboard.orchestrator import DataOrchestrator
from lms_dashboard.request_queue import RequestQueue
from lms_dashboard.schemas import Assignment, AssignmentCourse, AssignmentSubmissions, Submission

from lms_fakes import FakeLMSClient, make_course, make_section, make_user


# ===== FIXTURES =====

@pytest.fixture
def test_settings():
    return Settings(
        lms_base_url="https://lms.test",
        lms_token="test-token",
        cache_database_url="sqlite://",
        queue_pacing_ms=0,
        http_wait_seconds=5.0,
    )


@pytest.fixture
def fake_lms():
    return FakeLMSClient()


@pytest.fixture
def cache():
    return CacheManager(store=MemoryStore(), session_store=MemoryStore())


@pytest.fixture
def queue():
    q = RequestQueue(batch_size=3, pacing_delay=0)
    yield q
    q.shutdown()


@pytest.fixture
def orchestrator(fake_lms, cache, queue):
    orch = DataOrchestrator(fake_lms, cache, queue)
    yield orch
    orch.shutdown()


@pytest.fixture
def seeded_lms(fake_lms):
    """A small school: one student, one teacher, one admin, two courses."""
    fake_lms.add_user(make_user(7, "jdoe", lastaccess=0), roles=["student"])
    fake_lms.add_user(make_user(8, "msmith", lastaccess=0), roles=["editingteacher"])
    fake_lms.add_user(make_user(9, "root", lastaccess=0), roles=["manager"])

    algebra = make_course(101, "Algebra", progress=40, categoryname="Maths")
    physics = make_course(102, "Physics", progress=100, categoryname="Science")
    fake_lms.all_courses = [make_course(1, "Site", format="site"), algebra, physics]
    fake_lms.enrolments = {7: [algebra, physics], 8: [algebra]}

    fake_lms.contents[101] = [
        make_section(11, "Equations", [
            {"id": 1001, "name": "Intro video", "modname": "resource",
             "completiondata": {"state": 1}},
            {"id": 1002, "name": "Quiz 1", "modname": "quiz",
             "completiondata": {"state": 0},
             "dates": [{"label": "Due date", "timestamp": 1767225600}]},
        ]),
        make_section(12, "Graphs", [
            {"id": 1003, "name": "Homework", "modname": "assign"},
        ]),
        make_section(13, "Empty", []),
    ]
    fake_lms.contents[102] = [
        make_section(21, "Motion", [
            {"id": 2001, "name": "Lab", "modname": "workshop",
             "completiondata": {"state": 1}},
        ]),
    ]
    fake_lms.assignments = {
        101: AssignmentCourse(id=101, fullname="Algebra", assignments=[
            Assignment(id=501, name="Homework", duedate=1767225600),
        ]),
        102: AssignmentCourse(id=102, fullname="Physics", assignments=[
            Assignment(id=502, name="Lab report", duedate=1767312000),
        ]),
    }
    fake_lms.submissions = {
        501: AssignmentSubmissions(assignmentid=501, submissions=[
            Submission(id=1, userid=7, status="submitted"),
        ]),
    }
    return fake_lms
