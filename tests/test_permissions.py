"""
tests/test_permissions.py -- Authorization gate capability table.
"""

from __future__ import annotations

import pytest

from auth import permissions
from auth.errors import Forbidden


@pytest.mark.parametrize(
    "role, action, allowed",
    [
        ("admin", permissions.CATALOG_WRITE, True),
        ("admin", permissions.ACCOUNTS_MANAGE, True),
        ("admin", permissions.AUDIT_READ, True),
        ("editor", permissions.CATALOG_WRITE, True),
        ("editor", permissions.ACCOUNTS_READ, True),
        ("editor", permissions.ACCOUNTS_MANAGE, False),
        ("editor", permissions.AUDIT_READ, False),
        ("viewer", permissions.CATALOG_READ, True),
        ("viewer", permissions.ACCOUNTS_READ, True),
        ("viewer", permissions.CATALOG_WRITE, False),
        ("viewer", permissions.AUDIT_READ, False),
    ],
)
def test_capability_table(role: str, action: str, allowed: bool) -> None:
    assert permissions.can(role, action) is allowed


def test_unknown_role_and_action_are_denied() -> None:
    assert permissions.capabilities("superuser") == frozenset()
    assert permissions.capabilities(None) == frozenset()
    assert not permissions.can("admin", "catalog:delete")


def test_admin_holds_every_capability() -> None:
    assert permissions.capabilities("admin") == permissions.ALL_CAPABILITIES


def test_require_raises_forbidden() -> None:
    permissions.require("editor", permissions.CATALOG_WRITE)
    with pytest.raises(Forbidden) as excinfo:
        permissions.require("viewer", permissions.CATALOG_WRITE)
    assert excinfo.value.status_code == 403
