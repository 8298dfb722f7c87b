"""
User directory for profile loading and the admin views.

Listing every user means one role lookup per user, so the directory runs
its remote calls through its own, wider batching queue.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from lms_dashboard import schemas
from lms_dashboard.api_client import LMSClient
from lms_dashboard.cache import get_cache_key
from lms_dashboard.exceptions import OperationCancelled
from lms_dashboard.orchestrator import DataOrchestrator
from lms_dashboard.request_queue import RequestQueue
from lms_dashboard.roles import ResolvedRole, RoleResolver, RoleRule

logger = logging.getLogger("directory")


@dataclass
class UserProfile:
    """The signed-in user as the dashboard shell needs it."""
    id: str
    username: str
    fullname: str
    email: str
    role: str
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    profile_image: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DirectoryUser:
    """One row of the admin user list."""
    id: str
    username: str
    fullname: str
    email: str
    role: str
    resolved_by: str
    company_id: Optional[str] = None
    last_access: Optional[int] = None
    suspended: bool = False
    role_shortnames: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SchoolStatistics:
    school_id: str
    school_name: str
    total_users: int
    total_teachers: int
    total_students: int
    active_courses: int
    last_activity: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UserDirectory:
    """
    Profile loading and directory statistics.

    Usage:
        directory = UserDirectory(client, orchestrator, RequestQueue(batch_size=5))
        users = directory.list_users()
    """

    def __init__(
        self,
        client: LMSClient,
        orchestrator: DataOrchestrator,
        queue: RequestQueue,
        role_rules: Optional[Sequence[RoleRule]] = None,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.cache = orchestrator.cache
        self.queue = queue
        self._resolver = RoleResolver(rules=role_rules)

    # ===== PROFILE =====

    def load_profile(self, username: str) -> Optional[UserProfile]:
        """
        Look up a user by username and resolve their role.

        Returns:
            The profile, or None if the LMS has no such user
        """
        key = get_cache_key("user_profile", username.strip().lower())
        cached = self.cache.get_cached_data(key)
        if cached is not None:
            try:
                return UserProfile(**cached)
            except TypeError:
                logger.warning(f"Dropping unreadable cached profile for {username}")
                self.cache.invalidate(key)

        user = self.queue.submit(self.client.get_user_by_username, username).result()
        if user is None:
            logger.info(f"No LMS user named {username!r}")
            return None

        role = self.orchestrator.resolve_role(user.id, user=user)
        company = self._first_company(user)

        profile = UserProfile(
            id=str(user.id),
            username=user.username,
            fullname=user.display_name,
            email=user.email,
            role=role.value,
            company_id=str(company.id) if company else _optional_str(user.companyid),
            company_name=company.name if company else None,
            profile_image=user.profileimageurl,
        )
        self.cache.set_cached_data(key, profile.to_dict())
        return profile

    def _first_company(self, user: schemas.UserRecord) -> Optional[schemas.Company]:
        try:
            companies = self.queue.submit(self.client.get_user_companies, user.id).result()
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Company lookup failed for {user.username}: {e}")
            return None
        return companies[0] if companies else None

    # ===== ADMIN LISTINGS =====

    def list_users(self) -> List[DirectoryUser]:
        """Every user with a resolved role; role lookups are batched."""
        users = self.queue.submit(self.client.get_all_users).result()
        lookups = [self.queue.submit(self.client.get_user_roles, user.id) for user in users]

        rows = []
        for user, future in zip(users, lookups):
            try:
                assignments = future.result()
            except Exception as e:
                logger.warning(f"Could not fetch roles for user {user.id}: {e}")
                assignments = None
            resolution = self._resolver.explain(user.username, user, assignments)
            rows.append(DirectoryUser(
                id=str(user.id),
                username=user.username,
                fullname=user.display_name,
                email=user.email,
                role=resolution.role.value,
                resolved_by=resolution.rule,
                company_id=_optional_str(user.companyid),
                last_access=user.lastaccess,
                suspended=bool(user.suspended),
                role_shortnames=[a.shortname for a in assignments or []],
            ))
        logger.info(f"Listed {len(rows)} users")
        return rows

    @staticmethod
    def role_statistics(users: Sequence[DirectoryUser]) -> Dict[str, int]:
        """Count users per resolved role."""
        counts = {role.value: 0 for role in ResolvedRole}
        for user in users:
            counts[user.role] = counts.get(user.role, 0) + 1
        counts["total"] = len(users)
        return counts

    def school_statistics(self) -> List[SchoolStatistics]:
        """Per-school user and course counts."""
        courses_future = self.queue.submit(self.client.get_courses_by_field)
        companies_future = self.queue.submit(self.client.get_companies)
        users = self.list_users()
        courses = courses_future.result()
        companies = companies_future.result()

        active_courses = sum(1 for c in courses if c.visible != 0 and c.format != "site")
        stats = []
        for company in companies:
            members = [u for u in users if u.company_id == str(company.id)]
            stats.append(SchoolStatistics(
                school_id=str(company.id),
                school_name=company.name,
                total_users=len(members),
                total_teachers=sum(1 for u in members if u.role == ResolvedRole.TEACHER.value),
                total_students=sum(1 for u in members if u.role == ResolvedRole.STUDENT.value),
                active_courses=active_courses,
                last_activity=max((u.last_access or 0 for u in members), default=0),
            ))
        return stats

    def company_managers(
        self,
        users: Optional[Sequence[DirectoryUser]] = None,
    ) -> List[Dict[str, Any]]:
        """School admins with the first company each one manages."""
        if users is None:
            users = self.list_users()
        managers = [u for u in users if u.role == ResolvedRole.SCHOOL_ADMIN.value]
        lookups = [self.queue.submit(self.client.get_user_companies, m.id) for m in managers]

        rows = []
        for manager, future in zip(managers, lookups):
            company = None
            try:
                companies = future.result()
                company = companies[0].model_dump() if companies else None
            except Exception as e:
                logger.warning(f"Could not fetch company for manager {manager.username}: {e}")
            rows.append({**manager.to_dict(), "company": company})
        return rows


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
