"""
audit/models.py -- The immutable audit entry.

AuditEntry is a frozen dataclass: once built it cannot be changed, and the
ledger (audit/store.py) offers no update or delete path, so an entry is
write-once end to end.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

LOGIN_SUCCESS = "login_success"
LOGIN_FAILED = "login_failed"
LOGIN_BLOCKED = "login_blocked"
LOGOUT = "logout"
PASSWORD_CHANGE = "password_change"

ACTIONS: frozenset[str] = frozenset({LOGIN_SUCCESS, LOGIN_FAILED, LOGIN_BLOCKED, LOGOUT, PASSWORD_CHANGE})

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_BLOCKED = "blocked"


@dataclass(frozen=True)
class AuditEntry:
    """One authentication event.

    identity_key is whatever the caller presented (normally the email), so
    attempts against unknown emails are still recorded. metadata holds small
    structured context -- attempt number, attempts remaining, lock duration,
    retry-after seconds, provider name, and the client IP and user agent
    when the attempt came over HTTP.

    id is assigned by the ledger on append; entries built by callers carry None.
    """

    action: str
    identity_key: str
    status: str
    reason: str
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: int | None = None

    def __post_init__(self) -> None:
        # Read-only view so the mapping inside a frozen entry cannot be edited either.
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
