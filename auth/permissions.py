"""
auth/permissions.py -- The single authority on what each role may do.

Roles are mapped to explicit capability sets. There is no role ordering and
no numeric comparison: admin and editor share catalog write access, only
admin manages other admin accounts or reads the audit ledger, and viewer is
read-only. Adding a role means adding one entry to ROLE_CAPABILITIES; it
cannot silently inherit anything from a neighbour.

Every capability check in the codebase (API dependencies, AdminClient) goes
through can() / require(). The only other use of a role name is the
last-admin guard, which protects the role itself rather than a capability.
"""

from __future__ import annotations

from auth.errors import Forbidden

CATALOG_READ = "catalog:read"
CATALOG_WRITE = "catalog:write"
ACCOUNTS_READ = "accounts:read"
ACCOUNTS_MANAGE = "accounts:manage"
AUDIT_READ = "audit:read"

ALL_CAPABILITIES: frozenset[str] = frozenset(
    {CATALOG_READ, CATALOG_WRITE, ACCOUNTS_READ, ACCOUNTS_MANAGE, AUDIT_READ}
)

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "admin": ALL_CAPABILITIES,
    "editor": frozenset({CATALOG_READ, CATALOG_WRITE, ACCOUNTS_READ}),
    "viewer": frozenset({CATALOG_READ, ACCOUNTS_READ}),
}

ROLES: tuple[str, ...] = tuple(ROLE_CAPABILITIES)


def capabilities(role: str | None) -> frozenset[str]:
    """Capability set for role. Unknown or missing roles get nothing."""
    if role is None:
        return frozenset()
    return ROLE_CAPABILITIES.get(role, frozenset())


def can(role: str | None, action: str) -> bool:
    return action in capabilities(role)


def require(role: str | None, action: str) -> None:
    """Raise Forbidden unless role grants action."""
    if not can(role, action):
        raise Forbidden()
