"""
Pydantic schemas for LMS web service responses.

Every remote procedure the client calls has a registered response schema;
payloads are validated at the boundary so nothing downstream has to
inspect loosely-typed dicts.
"""
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from lms_dashboard.exceptions import LMSRemoteError, LMSResponseError


# ===== ERROR ENVELOPE =====

class RemoteException(BaseModel):
    """Error envelope returned with HTTP 200 by the LMS."""
    exception: str
    errorcode: Optional[str] = None
    message: str = ""
    debuginfo: Optional[str] = None


class ResponseWarning(BaseModel):
    """Non-fatal warning attached to many responses."""
    item: Optional[str] = None
    itemid: Optional[int] = None
    warningcode: Optional[str] = None
    message: Optional[str] = None


# ===== USER SCHEMAS =====

class RoleAssignment(BaseModel):
    """One (shortname, name) role pair reported for a user."""
    shortname: str
    name: str = ""

    class Config:
        frozen = True


class UserRecord(BaseModel):
    """Remote identity as returned by the user lookups."""
    id: int
    username: str = ""
    email: str = ""
    firstname: str = ""
    lastname: str = ""
    fullname: str = ""
    profileimageurl: Optional[str] = None
    lastaccess: Optional[int] = None
    suspended: Optional[bool] = None
    companyid: Optional[int] = None
    roles: List[RoleAssignment] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        if self.fullname:
            return self.fullname
        return f"{self.firstname} {self.lastname}".strip() or self.username


class UserList(BaseModel):
    """core_user_get_users"""
    users: List[UserRecord] = Field(default_factory=list)
    warnings: List[ResponseWarning] = Field(default_factory=list)


class UserRolesPayload(BaseModel):
    """
    local_intelliboard_get_users_roles

    The role map arrives as a JSON *string* keyed by assignment id.
    """
    data: Any = None

    def assignments(self) -> List[RoleAssignment]:
        raw = self.data
        if raw is None or raw == "":
            return []
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise LMSResponseError(f"Unparsable role payload: {e}") from e
        if isinstance(raw, dict):
            raw = list(raw.values())
        if not isinstance(raw, list):
            raise LMSResponseError(f"Unexpected role payload type: {type(raw).__name__}")
        try:
            return [RoleAssignment.model_validate(item) for item in raw]
        except ValidationError as e:
            raise LMSResponseError(f"Invalid role assignment: {e}") from e


class CreatedUser(BaseModel):
    id: int
    username: str


class SiteInfo(BaseModel):
    """core_webservice_get_site_info"""
    sitename: str = ""
    username: str = ""
    fullname: str = ""
    userid: int
    siteurl: str = ""
    release: Optional[str] = None


# ===== COMPANY SCHEMAS =====

class Company(BaseModel):
    id: int
    name: str = ""
    shortname: str = ""
    city: Optional[str] = None
    country: Optional[str] = None
    suspended: Optional[bool] = None
    usercount: Optional[int] = None
    coursecount: Optional[int] = None


class CompanyList(BaseModel):
    companies: List[Company] = Field(default_factory=list)


# ===== COURSE SCHEMAS =====

class OverviewFile(BaseModel):
    fileurl: str
    filename: Optional[str] = None


class Course(BaseModel):
    """A course as returned by the enrolment and course lookups."""
    id: int
    fullname: str = ""
    shortname: str = ""
    summary: Optional[str] = None
    category: Optional[int] = None
    categoryid: Optional[int] = None
    categoryname: Optional[str] = None
    courseimage: Optional[str] = None
    overviewfiles: List[OverviewFile] = Field(default_factory=list)
    progress: Optional[float] = None
    completed: Optional[bool] = None
    startdate: Optional[int] = None
    enddate: Optional[int] = None
    lastaccess: Optional[int] = None
    visible: Optional[int] = None
    format: Optional[str] = None

    @property
    def category_id(self) -> Optional[int]:
        return self.categoryid or self.category

    @property
    def image_url(self) -> Optional[str]:
        if self.courseimage:
            return self.courseimage
        if self.overviewfiles:
            return self.overviewfiles[0].fileurl
        return None


class CourseList(BaseModel):
    """core_course_get_courses_by_field"""
    courses: List[Course] = Field(default_factory=list)
    warnings: List[ResponseWarning] = Field(default_factory=list)


class ModuleDate(BaseModel):
    label: str = ""
    timestamp: int = 0


class CompletionData(BaseModel):
    state: Optional[int] = None
    timecompleted: Optional[int] = None


class CourseModule(BaseModel):
    """An activity inside a course section."""
    id: int
    name: str = ""
    modname: str = ""
    url: Optional[str] = None
    description: Optional[str] = None
    visible: Optional[int] = None
    availabilityinfo: Optional[str] = None
    completiondata: Optional[CompletionData] = None
    dates: List[ModuleDate] = Field(default_factory=list)


class CourseSection(BaseModel):
    """A course section; the dashboard presents sections as lessons."""
    id: int
    name: str = ""
    summary: Optional[str] = None
    section: Optional[int] = None
    visible: Optional[int] = None
    modules: List[CourseModule] = Field(default_factory=list)


class CompletionCondition(BaseModel):
    type: Optional[int] = None
    title: Optional[str] = None
    status: Optional[str] = None
    complete: bool = False


class CompletionStatus(BaseModel):
    completed: bool = False
    aggregation: Optional[int] = None
    completions: List[CompletionCondition] = Field(default_factory=list)


class CompletionStatusPayload(BaseModel):
    """core_completion_get_course_completion_status"""
    completionstatus: CompletionStatus
    warnings: List[ResponseWarning] = Field(default_factory=list)


class CourseGrade(BaseModel):
    courseid: int
    grade: Optional[str] = None
    rawgrade: Optional[str] = None
    rank: Optional[int] = None


class CourseGradesPayload(BaseModel):
    """gradereport_overview_get_course_grades"""
    grades: List[CourseGrade] = Field(default_factory=list)
    warnings: List[ResponseWarning] = Field(default_factory=list)


class Group(BaseModel):
    id: int
    courseid: int
    name: str = ""
    description: Optional[str] = None


class GroupMembers(BaseModel):
    groupid: int
    userids: List[int] = Field(default_factory=list)


# ===== ASSIGNMENT SCHEMAS =====

class Assignment(BaseModel):
    id: int
    cmid: Optional[int] = None
    course: Optional[int] = None
    name: str = ""
    intro: Optional[str] = None
    duedate: Optional[int] = None
    allowsubmissionsfromdate: Optional[int] = None
    cutoffdate: Optional[int] = None
    gradingduedate: Optional[int] = None
    maxattempts: Optional[int] = None


class AssignmentCourse(BaseModel):
    id: int
    fullname: str = ""
    assignments: List[Assignment] = Field(default_factory=list)


class AssignmentsPayload(BaseModel):
    """mod_assign_get_assignments"""
    courses: List[AssignmentCourse] = Field(default_factory=list)
    warnings: List[ResponseWarning] = Field(default_factory=list)


class Submission(BaseModel):
    id: int
    userid: int
    status: str = ""
    timemodified: Optional[int] = None
    attemptnumber: Optional[int] = None


class AssignmentSubmissions(BaseModel):
    assignmentid: int
    submissions: List[Submission] = Field(default_factory=list)


class SubmissionsPayload(BaseModel):
    """mod_assign_get_submissions"""
    assignments: List[AssignmentSubmissions] = Field(default_factory=list)
    warnings: List[ResponseWarning] = Field(default_factory=list)


class WarningsOnly(BaseModel):
    warnings: List[ResponseWarning] = Field(default_factory=list)


class CompanyListOrBare(CompanyList):
    """The companies listing answers either {"companies": [...]} or a bare list."""

    @field_validator("companies", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or []


# ===== RESPONSE REGISTRY =====

RESPONSE_SCHEMAS: Dict[str, TypeAdapter] = {
    "core_webservice_get_site_info": TypeAdapter(SiteInfo),
    "core_user_get_users_by_field": TypeAdapter(List[UserRecord]),
    "core_user_get_users": TypeAdapter(UserList),
    "local_intelliboard_get_users_roles": TypeAdapter(UserRolesPayload),
    "block_iomad_company_admin_get_user_companies": TypeAdapter(CompanyList),
    "block_iomad_company_admin_get_companies": TypeAdapter(CompanyListOrBare),
    "core_enrol_get_users_courses": TypeAdapter(List[Course]),
    "core_course_get_courses_by_field": TypeAdapter(CourseList),
    "core_course_get_contents": TypeAdapter(List[CourseSection]),
    "core_completion_get_course_completion_status": TypeAdapter(CompletionStatusPayload),
    "gradereport_overview_get_course_grades": TypeAdapter(CourseGradesPayload),
    "core_group_get_course_groups": TypeAdapter(List[Group]),
    "core_group_get_group_members": TypeAdapter(List[GroupMembers]),
    "mod_assign_get_assignments": TypeAdapter(AssignmentsPayload),
    "mod_assign_get_submissions": TypeAdapter(SubmissionsPayload),
    "core_user_create_users": TypeAdapter(List[CreatedUser]),
    # Write procedures answer null (or a warnings object)
    "enrol_manual_enrol_users": TypeAdapter(Optional[WarningsOnly]),
    "core_role_assign_roles": TypeAdapter(Optional[WarningsOnly]),
    "core_role_unassign_roles": TypeAdapter(Optional[WarningsOnly]),
    "core_user_update_users": TypeAdapter(Optional[WarningsOnly]),
    "core_user_delete_users": TypeAdapter(Optional[WarningsOnly]),
}


def parse_response(wsfunction: str, payload: Any) -> Any:
    """
    Validate a decoded JSON payload for a remote procedure.

    Raises:
        LMSRemoteError: payload is the LMS exception envelope
        LMSResponseError: payload does not match the registered schema
    """
    if isinstance(payload, dict) and "exception" in payload:
        error = RemoteException.model_validate(payload)
        raise LMSRemoteError(
            error.message or error.exception,
            wsfunction=wsfunction,
            errorcode=error.errorcode,
            exception=error.exception,
        )

    adapter = RESPONSE_SCHEMAS.get(wsfunction)
    if adapter is None:
        raise LMSResponseError(f"No response schema registered for {wsfunction}", wsfunction)

    if wsfunction == "block_iomad_company_admin_get_companies" and isinstance(payload, list):
        payload = {"companies": payload}

    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        raise LMSResponseError(
            f"Malformed response for {wsfunction}: {e.error_count()} error(s)",
            wsfunction,
        ) from e
