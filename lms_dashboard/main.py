"""
LMS Dashboard - FastAPI Application
JSON surface the dashboard views poll; every read goes through the data
orchestrator (cache first, batched background refresh).
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from config.settings import settings
from lms_dashboard.exceptions import LMSError
from lms_dashboard.orchestrator import Feature
from lms_dashboard.services import DashboardServices, build_services

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "LMS Dashboard"
APP_STAGE = "Beta"

_services_lock = threading.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Tear down whatever service graph the app ended up with."""
    yield
    with _services_lock:
        services = getattr(app.state, "services", None)
        app.state.services = None
    if services is not None:
        logger.info("Shutting down dashboard services")
        services.shutdown()


app = FastAPI(
    title=f"{APP_NAME} ({APP_STAGE})",
    description="Role-scoped course, lesson and activity data from the LMS",
    version=APP_VERSION,
    lifespan=lifespan,
)


def get_services(request: Request) -> DashboardServices:
    """Services live on app.state; tests install their own before the first request."""
    services = getattr(request.app.state, "services", None)
    if services is not None:
        return services
    with _services_lock:
        services = getattr(request.app.state, "services", None)
        if services is None:
            services = build_services(settings)
            request.app.state.services = services
    return services


def feature_response(
    services: DashboardServices,
    feature: Feature,
    user_id: int,
    **params: Any,
) -> Dict[str, Any]:
    """
    Load a feature and answer with its snapshot.

    Cached data is returned immediately; on a miss the request waits for
    the refresh, up to http_wait_seconds.
    """
    load = services.orchestrator.load(feature, user_id, **params)
    snapshot = load.snapshot
    if snapshot.loading:
        snapshot = load.wait(timeout=services.config.http_wait_seconds)
    if snapshot.error and snapshot.data is None:
        raise HTTPException(status_code=502, detail=snapshot.error)
    return snapshot.to_dict()


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "source": "lms", "mode": "live"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "stage": APP_STAGE,
        "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
    }


@app.get("/cache/stats")
def cache_stats(services: DashboardServices = Depends(get_services)):
    """Cache, queue and load statistics."""
    return services.orchestrator.get_stats()


# =============================================================================
# USER API
# =============================================================================

@app.get("/api/users/{username}/profile")
def get_profile(username: str, services: DashboardServices = Depends(get_services)):
    """Profile with resolved role and school."""
    try:
        profile = services.directory.load_profile(username)
    except LMSError as e:
        logger.error(f"Profile lookup failed for {username}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile.to_dict()


@app.get("/api/users/{user_id}/dashboard")
def get_dashboard(user_id: int, services: DashboardServices = Depends(get_services)):
    """Courses, assignments and recent activities in one bundle."""
    return feature_response(services, Feature.DASHBOARD, user_id)


@app.get("/api/users/{user_id}/courses")
def get_courses(user_id: int, services: DashboardServices = Depends(get_services)):
    """Enrolled courses (students, teachers) or all courses (admins)."""
    return feature_response(services, Feature.COURSES, user_id)


@app.get("/api/users/{user_id}/assignments")
def get_assignments(user_id: int, services: DashboardServices = Depends(get_services)):
    return feature_response(services, Feature.ASSIGNMENTS, user_id)


@app.get("/api/users/{user_id}/courses/{course_id}")
def get_course_detail(
    user_id: int,
    course_id: int,
    services: DashboardServices = Depends(get_services),
):
    """Course with its lessons, activities and completion."""
    return feature_response(services, Feature.COURSE_DETAIL, user_id, course_id=course_id)


@app.get("/api/users/{user_id}/courses/{course_id}/lessons")
def get_lessons(
    user_id: int,
    course_id: int,
    services: DashboardServices = Depends(get_services),
):
    return feature_response(services, Feature.LESSONS, user_id, course_id=course_id)


@app.get("/api/users/{user_id}/courses/{course_id}/activities")
def get_activities(
    user_id: int,
    course_id: int,
    services: DashboardServices = Depends(get_services),
):
    return feature_response(services, Feature.ACTIVITIES, user_id, course_id=course_id)


@app.get("/api/users/{user_id}/courses/{course_id}/lessons/{lesson_id}/activities")
def get_lesson_activities(
    user_id: int,
    course_id: int,
    lesson_id: int,
    services: DashboardServices = Depends(get_services),
):
    return feature_response(
        services,
        Feature.LESSON_ACTIVITIES,
        user_id,
        course_id=course_id,
        lesson_id=lesson_id,
    )


@app.delete("/api/users/{user_id}/cache")
def clear_user_cache(user_id: int, services: DashboardServices = Depends(get_services)):
    """Drop every cached entry for a user (e.g. after re-enrolment)."""
    removed = services.orchestrator.clear_user(user_id)
    return {"user_id": user_id, "cleared": removed}


# =============================================================================
# ADMIN API
# =============================================================================

@app.get("/api/admin/users")
def list_users(
    role: Optional[str] = None,
    services: DashboardServices = Depends(get_services),
):
    """All users with resolved roles, optionally filtered by role."""
    try:
        users = services.directory.list_users()
    except LMSError as e:
        logger.error(f"User listing failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    statistics = services.directory.role_statistics(users)
    if role:
        users = [u for u in users if u.role == role]
    return {
        "users": [u.to_dict() for u in users],
        "count": len(users),
        "statistics": statistics,
    }


@app.get("/api/admin/statistics")
def school_statistics(services: DashboardServices = Depends(get_services)):
    """Per-school user and course counts."""
    try:
        schools = services.directory.school_statistics()
    except LMSError as e:
        logger.error(f"School statistics failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"schools": [s.to_dict() for s in schools], "count": len(schools)}


@app.get("/api/admin/company-managers")
def company_managers(services: DashboardServices = Depends(get_services)):
    try:
        managers = services.directory.company_managers()
    except LMSError as e:
        logger.error(f"Company manager listing failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"managers": managers, "count": len(managers)}
