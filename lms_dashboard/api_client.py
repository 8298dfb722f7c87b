"""
Client for the LMS REST web service.

Every remote procedure is a POST to a single endpoint carrying the
web-service token, the procedure name and form-encoded arguments.
Responses are validated against lms_dashboard.schemas before they
leave this module.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import requests
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import Settings, settings as default_settings
from lms_dashboard import schemas
from lms_dashboard.exceptions import LMSResponseError, LMSTransportError

logger = logging.getLogger("api_client")


def flatten_params(value: Any, prefix: str = "") -> Dict[str, str]:
    """
    Flatten nested arguments into the bracketed form the web service expects.

    {"users": [{"id": 3}]} -> {"users[0][id]": "3"}
    """
    flat: Dict[str, str] = {}
    if isinstance(value, dict):
        for key, item in value.items():
            name = f"{prefix}[{key}]" if prefix else str(key)
            flat.update(flatten_params(item, name))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            flat.update(flatten_params(item, f"{prefix}[{index}]"))
    elif value is None:
        pass
    elif isinstance(value, bool):
        flat[prefix] = "1" if value else "0"
    else:
        flat[prefix] = str(value)
    return flat


def _is_retryable(exc: BaseException) -> bool:
    """Only connection-level failures are retried; HTTP errors are final."""
    return isinstance(exc, LMSTransportError) and exc.status_code is None


class LMSClient:
    """
    Named remote procedures over one token-authenticated HTTP endpoint.

    Read procedures are idempotent and retried on connection errors and
    timeouts. Write procedures are never retried.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or default_settings
        self._session = session or requests.Session()
        self._read_attempts = max(1, self.config.read_retries + 1)

    # ----- transport -----

    def call(self, wsfunction: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke a remote procedure once and return its validated response."""
        form = {
            "wstoken": self.config.lms_token or "",
            "wsfunction": wsfunction,
            "moodlewsrestformat": "json",
        }
        form.update(flatten_params(params or {}))

        logger.debug(f"LMS call {wsfunction}")
        try:
            response = self._session.post(
                self.config.service_url,
                data=form,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.Timeout as e:
            raise LMSTransportError(f"{wsfunction} timed out", wsfunction) from e
        except requests.RequestException as e:
            raise LMSTransportError(f"{wsfunction} failed: {e}", wsfunction) from e

        if not 200 <= response.status_code < 300:
            raise LMSTransportError(
                f"{wsfunction} returned HTTP {response.status_code}",
                wsfunction,
                status_code=response.status_code,
            )

        # Write procedures may answer with an empty body
        if not response.content or response.text.strip() in ("", "null"):
            payload = None
        else:
            try:
                payload = response.json()
            except ValueError as e:
                raise LMSResponseError(f"{wsfunction} returned non-JSON body", wsfunction) from e

        return schemas.parse_response(wsfunction, payload)

    def read(self, wsfunction: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke an idempotent read, retrying connection failures."""
        retrying = retry(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        return retrying(self.call)(wsfunction, params)

    # ===== SITE & USERS =====

    def get_site_info(self) -> schemas.SiteInfo:
        return self.read("core_webservice_get_site_info")

    def get_users_by_field(self, field: str, values: Iterable[Any]) -> List[schemas.UserRecord]:
        """Look up users by id, username, email or idnumber."""
        return self.read(
            "core_user_get_users_by_field",
            {"field": field, "values": list(values)},
        )

    def get_user(self, user_id: Any) -> Optional[schemas.UserRecord]:
        users = self.get_users_by_field("id", [user_id])
        return users[0] if users else None

    def get_user_by_username(self, username: str) -> Optional[schemas.UserRecord]:
        users = self.get_users_by_field("username", [username])
        return users[0] if users else None

    def get_all_users(self) -> List[schemas.UserRecord]:
        """All non-deleted users."""
        result = self.read(
            "core_user_get_users",
            {"criteria": [{"key": "deleted", "value": "0"}]},
        )
        return result.users

    def get_user_roles(self, user_id: Any) -> List[schemas.RoleAssignment]:
        """Site-level role assignments, including parent contexts."""
        result = self.read(
            "local_intelliboard_get_users_roles",
            {"data": {"courseid": 0, "userid": user_id, "checkparentcontexts": 1}},
        )
        return result.assignments()

    def get_user_companies(self, user_id: Any) -> List[schemas.Company]:
        return self.read(
            "block_iomad_company_admin_get_user_companies",
            {"userid": user_id},
        ).companies

    def get_companies(self) -> List[schemas.Company]:
        """All non-suspended companies (schools)."""
        return self.read(
            "block_iomad_company_admin_get_companies",
            {"criteria": [{"key": "suspended", "value": "0"}]},
        ).companies

    # ===== COURSES =====

    def get_user_courses(self, user_id: Any) -> List[schemas.Course]:
        """Courses the user is enrolled in."""
        return self.read("core_enrol_get_users_courses", {"userid": user_id})

    def get_courses_by_field(
        self, field: Optional[str] = None, value: Any = None
    ) -> List[schemas.Course]:
        """Courses filtered by field; no field returns every course."""
        params = {"field": field, "value": value} if field else {}
        return self.read("core_course_get_courses_by_field", params).courses

    def get_course_contents(self, course_id: Any) -> List[schemas.CourseSection]:
        return self.read("core_course_get_contents", {"courseid": course_id})

    def get_completion_status(self, course_id: Any, user_id: Any) -> schemas.CompletionStatus:
        return self.read(
            "core_completion_get_course_completion_status",
            {"courseid": course_id, "userid": user_id},
        ).completionstatus

    def get_course_grades(self, user_id: Any) -> List[schemas.CourseGrade]:
        return self.read(
            "gradereport_overview_get_course_grades",
            {"userid": user_id},
        ).grades

    def get_course_groups(self, course_id: Any) -> List[schemas.Group]:
        return self.read("core_group_get_course_groups", {"courseid": course_id})

    def get_group_members(self, group_ids: Iterable[Any]) -> List[schemas.GroupMembers]:
        return self.read("core_group_get_group_members", {"groupids": list(group_ids)})

    # ===== ASSIGNMENTS =====

    def get_assignments(self, course_ids: Iterable[Any]) -> List[schemas.AssignmentCourse]:
        return self.read(
            "mod_assign_get_assignments",
            {"courseids": list(course_ids)},
        ).courses

    def get_submissions(self, assignment_ids: Iterable[Any]) -> List[schemas.AssignmentSubmissions]:
        return self.read(
            "mod_assign_get_submissions",
            {"assignmentids": list(assignment_ids)},
        ).assignments

    # ===== ADMINISTRATION (writes, never retried) =====

    def enrol_user(self, user_id: Any, course_id: Any, role_id: int = 5) -> None:
        """Manual enrolment; role 5 is the stock student role."""
        self.call(
            "enrol_manual_enrol_users",
            {"enrolments": [{"roleid": role_id, "userid": user_id, "courseid": course_id}]},
        )

    def assign_role(self, user_id: Any, role_id: int, context_id: int = 1) -> None:
        self.call(
            "core_role_assign_roles",
            {"assignments": [{"roleid": role_id, "userid": user_id, "contextid": context_id}]},
        )

    def unassign_role(self, user_id: Any, role_id: int, context_id: int = 1) -> None:
        self.call(
            "core_role_unassign_roles",
            {"unassignments": [{"roleid": role_id, "userid": user_id, "contextid": context_id}]},
        )

    def create_user(
        self,
        username: str,
        password: str,
        firstname: str,
        lastname: str,
        email: str,
    ) -> schemas.CreatedUser:
        created = self.call(
            "core_user_create_users",
            {
                "users": [{
                    "username": username,
                    "password": password,
                    "firstname": firstname,
                    "lastname": lastname,
                    "email": email,
                }]
            },
        )
        if not created:
            raise LMSResponseError(
                "core_user_create_users returned no user", "core_user_create_users"
            )
        return created[0]

    def update_user(self, user_id: Any, **fields: Any) -> None:
        self.call("core_user_update_users", {"users": [{"id": user_id, **fields}]})

    def suspend_user(self, user_id: Any, suspended: bool = True) -> None:
        self.update_user(user_id, suspended=suspended)

    def delete_user(self, user_id: Any) -> None:
        self.call("core_user_delete_users", {"userids": [user_id]})

    def test_connection(self) -> bool:
        """True if the web service answers site info."""
        try:
            self.get_site_info()
            return True
        except Exception as e:
            logger.warning(f"LMS connection test failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
