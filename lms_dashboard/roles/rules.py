"""
The role resolution cascade, expressed as data.

Rules are ordered from cheapest and most precise to most expensive and
least precise; the first rule returning a role wins.
"""
from datetime import timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from .models import ResolvedRole, RoleContext, RoleRule


# Guest and test accounts; always students whatever the LMS says
SYSTEM_ACCOUNTS: FrozenSet[str] = frozenset({
    "guest",
    "demo",
    "testuser",
    "student_demo",
})

KNOWN_ADMIN_ACCOUNTS: Dict[str, ResolvedRole] = {
    "kodeit_admin": ResolvedRole.ADMIN,
    "kodeitadmin": ResolvedRole.ADMIN,
    "kodeit admin": ResolvedRole.ADMIN,
    "school_admin1": ResolvedRole.SCHOOL_ADMIN,
}

# Exact shortnames only; "coursecreator_teacherlike" must not become a teacher
ROLE_SHORTNAMES: Dict[str, ResolvedRole] = {
    "siteadmin": ResolvedRole.ADMIN,
    "superadmin": ResolvedRole.ADMIN,
    "admin": ResolvedRole.ADMIN,
    "manager": ResolvedRole.ADMIN,
    "companymanager": ResolvedRole.SCHOOL_ADMIN,
    "company_manager": ResolvedRole.SCHOOL_ADMIN,
    "school_admin": ResolvedRole.SCHOOL_ADMIN,
    "principal": ResolvedRole.SCHOOL_ADMIN,
    "cluster_admin": ResolvedRole.SCHOOL_ADMIN,
    "editingteacher": ResolvedRole.TEACHER,
    "teacher": ResolvedRole.TEACHER,
    "teachers": ResolvedRole.TEACHER,
    "trainer": ResolvedRole.TEACHER,
    "student": ResolvedRole.STUDENT,
    "user": ResolvedRole.STUDENT,
    "guest": ResolvedRole.STUDENT,
}

USERNAME_PATTERNS: Tuple[Tuple[Tuple[str, ...], ResolvedRole], ...] = (
    (("admin", "manager"), ResolvedRole.ADMIN),
    (("teacher", "trainer", "instructor"), ResolvedRole.TEACHER),
    (("student", "learner"), ResolvedRole.STUDENT),
)

EMAIL_DOMAIN_PATTERNS: Tuple[Tuple[Tuple[str, ...], ResolvedRole], ...] = (
    (("admin", "school"), ResolvedRole.SCHOOL_ADMIN),
    (("teacher", "faculty"), ResolvedRole.TEACHER),
    (("student", "edu"), ResolvedRole.STUDENT),
)

INACTIVITY_WINDOW = timedelta(days=30)


def _match_patterns(text: str, patterns) -> Optional[ResolvedRole]:
    for keywords, role in patterns:
        if any(keyword in text for keyword in keywords):
            return role
    return None


def system_account(ctx: RoleContext) -> Optional[ResolvedRole]:
    if ctx.normalized_username in SYSTEM_ACCOUNTS:
        return ResolvedRole.STUDENT
    return None


def known_admin_account(ctx: RoleContext) -> Optional[ResolvedRole]:
    return KNOWN_ADMIN_ACCOUNTS.get(ctx.normalized_username)


def role_assignment(ctx: RoleContext) -> Optional[ResolvedRole]:
    """Most privileged exact shortname match; list order does not matter."""
    matched = [
        ROLE_SHORTNAMES[assignment.shortname.strip().lower()]
        for assignment in ctx.role_assignments
        if assignment.shortname and assignment.shortname.strip().lower() in ROLE_SHORTNAMES
    ]
    if not matched:
        return None
    return min(matched, key=lambda role: role.rank)


def username_pattern(ctx: RoleContext) -> Optional[ResolvedRole]:
    return _match_patterns(ctx.normalized_username, USERNAME_PATTERNS)


def enrollment(ctx: RoleContext) -> Optional[ResolvedRole]:
    count = ctx.enrollment_count
    if count is not None and count > 0:
        return ResolvedRole.STUDENT
    return None


def email_domain(ctx: RoleContext) -> Optional[ResolvedRole]:
    email = ctx.email.strip().lower()
    if "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1]
    return _match_patterns(domain, EMAIL_DOMAIN_PATTERNS)


def make_inactivity_rule(window: timedelta = INACTIVITY_WINDOW):
    """Build the inactivity rule for a given window."""

    def inactivity(ctx: RoleContext) -> Optional[ResolvedRole]:
        # 0 means the user never logged in: no signal
        if not ctx.last_access:
            return None
        if ctx.now - ctx.last_access > window.total_seconds():
            return ResolvedRole.STUDENT
        return None

    return inactivity


inactivity = make_inactivity_rule()


def build_cascade(
    use_enrollment: bool = True,
    use_inactivity: bool = True,
    inactivity_window: timedelta = INACTIVITY_WINDOW,
) -> Tuple[RoleRule, ...]:
    """
    Assemble the ordered rule list.

    The enrollment and inactivity tiers bias inactive staff towards
    STUDENT and can be switched off independently.
    """
    rules = [
        RoleRule("system_account", system_account),
        RoleRule("known_admin_account", known_admin_account),
        RoleRule("role_assignment", role_assignment, remote=True),
        RoleRule("username_pattern", username_pattern),
    ]
    if use_enrollment:
        rules.append(RoleRule("enrollment", enrollment, remote=True))
    rules.append(RoleRule("email_domain", email_domain))
    if use_inactivity:
        rules.append(RoleRule("inactivity", make_inactivity_rule(inactivity_window)))
    return tuple(rules)


DEFAULT_CASCADE: Tuple[RoleRule, ...] = build_cascade()
