"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores and the
gateway do the work; these only own the domain shape.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass
class AdminAccount:
    """The persisted per-admin record owned by the account directory.

    identity_id is the stable identifier issued by the identity provider
    (password or federated). email is stored lower-cased and is unique.

    Lock state:
      is_locked=True always comes with a locked_until in the future at the
      moment the lock is written. failed_attempts goes back to 0 on a
      successful login and when an expired lock is cleared.

    last_failed_at marks the most recent failure; a failure arriving more than
    one lockout window later starts a new count.

    version is the optimistic-concurrency token. Every write bumps it; a write
    carrying a stale version is rejected by the store.
    """

    identity_id: str
    email: str
    role: str  # "admin", "editor", "viewer"
    display_name: str = ""
    is_active: bool = True
    failed_attempts: int = 0
    last_failed_at: datetime | None = None
    is_locked: bool = False
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    def lock_active(self, now: datetime) -> bool:
        """True while a stored lock is still in force.

        A lock whose locked_until has passed is treated as released from that
        instant, whether or not the clear has been written back yet.
        """
        return self.is_locked and self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class Identity:
    """A verified identity as returned by the identity provider."""

    identity_id: str
    email: str
    display_name: str = ""
    provider: str = "password"  # "password", "google", ...


@dataclass(frozen=True)
class TokenGrant:
    """A bearer token and its authoritative expiry, as issued by the provider."""

    token: str
    expires_at: datetime


@dataclass(frozen=True)
class Session:
    """Client-held session. refresh_at is always strictly before expires_at."""

    token: str
    identity_id: str
    issued_at: datetime
    expires_at: datetime
    refresh_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class LoginResult:
    """What a successful login hands back to the UI/CLI layer."""

    identity: Identity
    role: str
    token: str
    session: Session | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: timedelta | None = None


@dataclass(frozen=True)
class FailureOutcome:
    """Result of recording one failed attempt against the directory.

    attempts is the persisted counter after the increment (0 when the identity
    is unknown). just_locked is True only for the failure that set the lock.
    """

    attempts: int
    locked: bool = False
    just_locked: bool = False
    locked_until: datetime | None = None
    remaining: int = 0
