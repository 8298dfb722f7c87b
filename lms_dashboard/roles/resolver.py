"""
Role resolution engine.

Walks the rule cascade and returns exactly one ResolvedRole. Resolution is
total: a failing rule or remote lookup is logged and skipped, and when no
rule decides, the user is a student.
"""
import logging
from typing import Optional, Sequence, Tuple

from lms_dashboard.schemas import RoleAssignment, UserRecord

from .models import (
    EnrollmentFetcher,
    ResolvedRole,
    RoleContext,
    RoleFetcher,
    RoleResolution,
    RoleRule,
)
from .rules import DEFAULT_CASCADE

logger = logging.getLogger("roles.resolver")

DEFAULT_ROLE = ResolvedRole.STUDENT


class RoleResolver:
    """
    Resolves a remote user to one application role.

    Usage:
        resolver = RoleResolver(
            role_fetcher=client.get_user_roles,
            enrollment_fetcher=lambda uid: len(client.get_user_courses(uid)),
        )
        role = resolver.resolve("jdoe", user_record)
    """

    def __init__(
        self,
        rules: Optional[Sequence[RoleRule]] = None,
        role_fetcher: Optional[RoleFetcher] = None,
        enrollment_fetcher: Optional[EnrollmentFetcher] = None,
    ):
        self.rules: Tuple[RoleRule, ...] = tuple(rules) if rules is not None else DEFAULT_CASCADE
        self.role_fetcher = role_fetcher
        self.enrollment_fetcher = enrollment_fetcher

    def explain(
        self,
        username: str,
        user: Optional[UserRecord] = None,
        role_assignments: Optional[Sequence[RoleAssignment]] = None,
        now: Optional[float] = None,
    ) -> RoleResolution:
        """Resolve and report which rule decided."""
        ctx = RoleContext(
            username=username,
            user=user,
            role_assignments=role_assignments,
            role_fetcher=self.role_fetcher,
            enrollment_fetcher=self.enrollment_fetcher,
            now=now,
        )
        skipped = []
        for rule in self.rules:
            try:
                role = rule.evaluate(ctx)
            except Exception as e:
                logger.warning(f"Role rule {rule.name} failed for {username!r}: {e}")
                skipped.append(rule.name)
                continue
            if isinstance(role, ResolvedRole):
                logger.info(f"User {username!r} resolved to {role.value} by {rule.name}")
                return RoleResolution(
                    role, rule.name, ctx.remote_calls, ctx.failed_lookups, skipped
                )

        logger.info(f"User {username!r} defaulting to {DEFAULT_ROLE.value}")
        return RoleResolution(
            DEFAULT_ROLE, "default", ctx.remote_calls, ctx.failed_lookups, skipped
        )

    def resolve(
        self,
        username: str,
        user: Optional[UserRecord] = None,
        role_assignments: Optional[Sequence[RoleAssignment]] = None,
        now: Optional[float] = None,
    ) -> ResolvedRole:
        """Never raises; always returns a ResolvedRole."""
        try:
            return self.explain(username, user, role_assignments, now).role
        except Exception as e:
            logger.error(f"Role resolution failed for {username!r}: {e}")
            return DEFAULT_ROLE


def resolve_role(
    username: str,
    user: Optional[UserRecord] = None,
    role_assignments: Optional[Sequence[RoleAssignment]] = None,
    now: Optional[float] = None,
) -> ResolvedRole:
    """Resolve with the default cascade and no remote lookups."""
    return RoleResolver().resolve(username, user, role_assignments, now)
