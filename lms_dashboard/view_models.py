"""
View Models for Dashboard Rendering
Strict mapping layer that converts validated LMS responses into
presentation-ready projections. Every projection is a plain dataclass with
a to_dict() so it can be cached as JSON and served as-is.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from lms_dashboard import schemas


# =============================================================================
# DISPLAY TABLES
# =============================================================================

ACTIVITY_TYPES = {
    "assign": "assignment",
    "quiz": "quiz",
    "resource": "video",
    "url": "video",
    "forum": "practice",
    "workshop": "assignment",
    "scorm": "video",
    "lti": "practice",
}

ACTIVITY_DURATIONS = {
    "assign": "45 min",
    "quiz": "30 min",
    "resource": "20 min",
    "url": "15 min",
    "forum": "25 min",
    "workshop": "60 min",
    "scorm": "40 min",
    "lti": "35 min",
}

NEW_ACTIVITY_WINDOW = timedelta(days=7)


# =============================================================================
# HELPERS
# =============================================================================

def format_date(timestamp: Optional[int]) -> Optional[str]:
    """Epoch seconds -> ISO date; 0 and None mean "not set"."""
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


def completion_status(completion: Optional[schemas.CompletionData]) -> str:
    """Completion state 1 is complete, 0 is tracked but incomplete."""
    if completion is None or completion.state is None:
        return "not-started"
    if completion.state >= 1:
        return "completed"
    return "in-progress"


def completion_progress(status: str) -> int:
    return {"completed": 100, "in-progress": 50}.get(status, 0)


def course_difficulty(category: str, title: str) -> str:
    text = f"{category} {title}".lower()
    if "advanced" in text or "expert" in text:
        return "Advanced"
    if "intermediate" in text:
        return "Intermediate"
    return "Beginner"


def due_date(dates: List[schemas.ModuleDate]) -> Optional[str]:
    """The "Due date" entry if present, otherwise the last listed date."""
    if not dates:
        return None
    chosen = next((d for d in dates if d.label.lower().startswith("due")), dates[-1])
    return format_date(chosen.timestamp)


# =============================================================================
# PAYLOAD CONTRACTS
# =============================================================================


@dataclass
class CourseView:
    """Course card payload."""
    id: str
    title: str
    description: str
    category: str
    image: Optional[str] = None
    progress: float = 0
    is_active: bool = True
    difficulty: str = "Beginner"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    last_accessed: Optional[str] = None
    placeholder: bool = False

    @classmethod
    def from_course(cls, course: schemas.Course) -> "CourseView":
        category = course.categoryname or "General"
        return cls(
            id=str(course.id),
            title=course.fullname or course.shortname,
            description=course.summary or "No description available",
            category=category,
            image=course.image_url,
            progress=round(course.progress or 0, 1),
            is_active=course.visible != 0,
            difficulty=course_difficulty(category, course.fullname),
            start_date=format_date(course.startdate),
            end_date=format_date(course.enddate),
            last_accessed=format_date(course.lastaccess),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActivityView:
    """One course module shown as an activity."""
    id: str
    course_id: str
    lesson_id: Optional[str]
    title: str
    type: str
    modname: str
    duration: str
    status: str
    progress: int
    due_date: Optional[str] = None
    is_new: bool = False
    url: Optional[str] = None
    prerequisites: Optional[str] = None

    @classmethod
    def from_module(
        cls,
        module: schemas.CourseModule,
        course_id: Any,
        lesson_id: Any = None,
        now: Optional[datetime] = None,
    ) -> "ActivityView":
        now = now or datetime.now(timezone.utc)
        status = completion_status(module.completiondata)
        cutoff = (now - NEW_ACTIVITY_WINDOW).timestamp()
        return cls(
            id=str(module.id),
            course_id=str(course_id),
            lesson_id=str(lesson_id) if lesson_id is not None else None,
            title=module.name,
            type=ACTIVITY_TYPES.get(module.modname, "practice"),
            modname=module.modname,
            duration=ACTIVITY_DURATIONS.get(module.modname, "30 min"),
            status=status,
            progress=completion_progress(status),
            due_date=due_date(module.dates),
            is_new=any(d.timestamp > cutoff for d in module.dates),
            url=module.url,
            prerequisites=module.availabilityinfo,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LessonView:
    """A course section presented as a lesson."""
    id: str
    course_id: str
    title: str
    summary: str
    position: int
    activity_count: int
    completed_count: int
    progress: int
    status: str
    activities: List[ActivityView] = field(default_factory=list)

    @classmethod
    def from_section(
        cls,
        section: schemas.CourseSection,
        course_id: Any,
        now: Optional[datetime] = None,
    ) -> "LessonView":
        activities = [
            ActivityView.from_module(module, course_id, section.id, now)
            for module in section.modules
            if module.visible != 0
        ]
        completed = sum(1 for a in activities if a.status == "completed")
        progress = round(completed / len(activities) * 100) if activities else 0
        if activities and completed == len(activities):
            status = "completed"
        elif completed or any(a.status == "in-progress" for a in activities):
            status = "in-progress"
        else:
            status = "not-started"
        return cls(
            id=str(section.id),
            course_id=str(course_id),
            title=section.name or f"Lesson {section.section or 0}",
            summary=section.summary or "",
            position=section.section or 0,
            activity_count=len(activities),
            completed_count=completed,
            progress=progress,
            status=status,
            activities=activities,
        )

    def to_dict(self, include_activities: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_activities:
            data.pop("activities")
        return data


@dataclass
class EnrollmentView:
    """A user's standing in one course."""
    course_id: str
    user_id: str
    course_title: str
    progress: float
    completed: bool
    last_accessed: Optional[str] = None

    @classmethod
    def from_course(cls, course: schemas.Course, user_id: Any) -> "EnrollmentView":
        return cls(
            course_id=str(course.id),
            user_id=str(user_id),
            course_title=course.fullname,
            progress=round(course.progress or 0, 1),
            completed=bool(course.completed),
            last_accessed=format_date(course.lastaccess),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssignmentView:
    """Assignment row for the dashboard's to-do list."""
    id: str
    course_id: str
    course_title: str
    title: str
    due_date: Optional[str]
    status: str  # "submitted" | "pending" | "overdue"

    @classmethod
    def from_assignment(
        cls,
        assignment: schemas.Assignment,
        course: schemas.AssignmentCourse,
        submission_status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "AssignmentView":
        now = now or datetime.now(timezone.utc)
        if submission_status == "submitted":
            status = "submitted"
        elif assignment.duedate and assignment.duedate < now.timestamp():
            status = "overdue"
        else:
            status = "pending"
        return cls(
            id=str(assignment.id),
            course_id=str(course.id),
            course_title=course.fullname,
            title=assignment.name,
            due_date=format_date(assignment.duedate),
            status=status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# COLLECTION TRANSFORMS
# =============================================================================

def courses_to_payload(courses: Iterable[schemas.Course]) -> List[Dict[str, Any]]:
    return [CourseView.from_course(c).to_dict() for c in courses]


def sections_to_lessons(
    sections: Iterable[schemas.CourseSection],
    course_id: Any,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Sections with no visible activities are not lessons."""
    lessons = [LessonView.from_section(s, course_id, now) for s in sections if s.visible != 0]
    return [lesson.to_dict() for lesson in lessons if lesson.activity_count]


def sections_to_activities(
    sections: Iterable[schemas.CourseSection],
    course_id: Any,
    lesson_id: Any = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Flatten activities; restrict to one section when lesson_id is given."""
    activities = []
    for section in sections:
        if lesson_id is not None and str(section.id) != str(lesson_id):
            continue
        lesson = LessonView.from_section(section, course_id, now)
        activities.extend(a.to_dict() for a in lesson.activities)
    return activities


def assignments_to_payload(
    courses: Iterable[schemas.AssignmentCourse],
    submissions: Optional[Dict[int, str]] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Args:
        courses: mod_assign_get_assignments course groups
        submissions: assignment id -> the user's submission status
    """
    submissions = submissions or {}
    rows = []
    for course in courses:
        for assignment in course.assignments:
            view = AssignmentView.from_assignment(
                assignment, course, submissions.get(assignment.id), now
            )
            rows.append(view.to_dict())
    rows.sort(key=lambda row: (row["due_date"] is None, row["due_date"] or ""))
    return rows


# =============================================================================
# PLACEHOLDER DATA
# =============================================================================
# Shown to students with no enrolments instead of an empty dashboard.

PLACEHOLDER_COURSES: List[CourseView] = [
    CourseView(
        id="placeholder-1",
        title="Getting Started with Digital Learning",
        description="Find your way around lessons, activities and assignments.",
        category="Orientation",
        difficulty="Beginner",
        placeholder=True,
    ),
    CourseView(
        id="placeholder-2",
        title="Introduction to Programming",
        description="Core programming concepts through short interactive exercises.",
        category="Programming",
        difficulty="Beginner",
        placeholder=True,
    ),
    CourseView(
        id="placeholder-3",
        title="Creative Design Basics",
        description="Explore colour, layout and composition with guided projects.",
        category="Design",
        difficulty="Beginner",
        placeholder=True,
    ),
]


def placeholder_courses() -> List[Dict[str, Any]]:
    return [course.to_dict() for course in PLACEHOLDER_COURSES]
