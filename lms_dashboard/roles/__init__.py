"""
Role resolution: classify a remote user into one application role.
"""
from .models import ResolvedRole, RoleContext, RoleResolution, RoleRule
from .rules import DEFAULT_CASCADE, ROLE_SHORTNAMES, SYSTEM_ACCOUNTS, build_cascade
from .resolver import DEFAULT_ROLE, RoleResolver, resolve_role

__all__ = [
    "ResolvedRole",
    "RoleContext",
    "RoleResolution",
    "RoleRule",
    "DEFAULT_CASCADE",
    "ROLE_SHORTNAMES",
    "SYSTEM_ACCOUNTS",
    "build_cascade",
    "DEFAULT_ROLE",
    "RoleResolver",
    "resolve_role",
]
