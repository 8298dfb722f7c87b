"""
Role types shared by the resolution rules and the resolver.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from lms_dashboard.schemas import RoleAssignment, UserRecord

logger = logging.getLogger("roles")


class ResolvedRole(Enum):
    """Application roles; anything unclassifiable resolves to STUDENT."""
    ADMIN = "admin"
    SCHOOL_ADMIN = "school_admin"
    TEACHER = "teacher"
    STUDENT = "student"

    @property
    def rank(self) -> int:
        """Lower is more privileged."""
        return _RANK[self]


_RANK = {
    ResolvedRole.ADMIN: 0,
    ResolvedRole.SCHOOL_ADMIN: 1,
    ResolvedRole.TEACHER: 2,
    ResolvedRole.STUDENT: 3,
}


RoleFetcher = Callable[[Any], Sequence[RoleAssignment]]
EnrollmentFetcher = Callable[[Any], int]


class RoleContext:
    """
    Inputs a rule may inspect.

    Role assignments and the enrollment count are looked up lazily, at most
    once, and only when a rule actually asks for them. Lookup failures are
    logged and read as "no signal".
    """

    def __init__(
        self,
        username: str,
        user: Optional[UserRecord] = None,
        role_assignments: Optional[Sequence[RoleAssignment]] = None,
        role_fetcher: Optional[RoleFetcher] = None,
        enrollment_fetcher: Optional[EnrollmentFetcher] = None,
        now: Optional[float] = None,
    ):
        self.username = username or ""
        self.user = user
        self._assignments = list(role_assignments) if role_assignments is not None else None
        self._role_fetcher = role_fetcher
        self._enrollment_fetcher = enrollment_fetcher
        self._enrollments: Optional[int] = None
        self._enrollments_loaded = False
        self.now = now if now is not None else time.time()
        self.remote_calls = 0
        self.failed_lookups = 0

    @property
    def normalized_username(self) -> str:
        return self.username.strip().lower()

    @property
    def email(self) -> str:
        return (self.user.email if self.user else "") or ""

    @property
    def last_access(self) -> Optional[int]:
        return self.user.lastaccess if self.user else None

    @property
    def role_assignments(self) -> List[RoleAssignment]:
        if self._assignments is None:
            self._assignments = self._load_assignments()
        return self._assignments

    def _load_assignments(self) -> List[RoleAssignment]:
        if self.user is not None and self.user.roles:
            return list(self.user.roles)
        if self._role_fetcher is None or self.user is None:
            return []
        self.remote_calls += 1
        try:
            return list(self._role_fetcher(self.user.id) or [])
        except Exception as e:
            self.failed_lookups += 1
            logger.warning(f"Role lookup failed for {self.username}: {e}")
            return []

    @property
    def enrollment_count(self) -> Optional[int]:
        """Number of course enrollments, or None when unknown."""
        if not self._enrollments_loaded:
            self._enrollments_loaded = True
            self._enrollments = self._load_enrollments()
        return self._enrollments

    def _load_enrollments(self) -> Optional[int]:
        if self._enrollment_fetcher is None or self.user is None:
            return None
        self.remote_calls += 1
        try:
            return int(self._enrollment_fetcher(self.user.id))
        except Exception as e:
            self.failed_lookups += 1
            logger.warning(f"Enrollment lookup failed for {self.username}: {e}")
            return None


@dataclass(frozen=True)
class RoleRule:
    """One tier of the cascade: a named predicate mapping context to a role."""
    name: str
    evaluate: Callable[[RoleContext], Optional[ResolvedRole]]
    remote: bool = False


@dataclass
class RoleResolution:
    """The resolved role and the rule that decided it."""
    role: ResolvedRole
    rule: str
    remote_calls: int = 0
    failed_lookups: int = 0
    skipped: List[str] = field(default_factory=list)
