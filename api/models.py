"""
API request and response models for Storegate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import AuditEntry
from auth import permissions
from auth.models import AdminAccount

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Shape check only; the identity provider decides whether the address is real.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    max_length on password stops oversized payloads before bcrypt runs.
    """

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=128)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: str
    email: str
    role: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_at: datetime


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_at: datetime


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: str
    email: str
    display_name: str
    role: str
    capabilities: list[str]


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/accounts.

    With a password, local credentials are registered as well. Without one,
    the record waits for the person's first federated login, matched by email.
    """

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    display_name: str = Field(default="", max_length=255)
    role: RoleEnum = RoleEnum.editor
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)


class AccountPatch(BaseModel):
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    display_name: Optional[str] = Field(default=None, max_length=255)


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: str
    email: str
    display_name: str
    role: str
    is_active: bool
    failed_attempts: int
    is_locked: bool
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: AdminAccount) -> "AccountResponse":
        return cls(
            identity_id=account.identity_id,
            email=account.email,
            display_name=account.display_name,
            role=account.role,
            is_active=account.is_active,
            failed_attempts=account.failed_attempts,
            is_locked=account.is_locked,
            locked_until=account.locked_until,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


def me_from_account(account: AdminAccount) -> MeResponse:
    return MeResponse(
        identity_id=account.identity_id,
        email=account.email,
        display_name=account.display_name,
        role=account.role,
        capabilities=sorted(permissions.capabilities(account.role)),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    identity_key: str
    status: str
    reason: str
    timestamp: datetime
    metadata: dict[str, Any]

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id or 0,
            action=entry.action,
            identity_key=entry.identity_key,
            status=entry.status,
            reason=entry.reason,
            timestamp=entry.timestamp,
            metadata=dict(entry.metadata),
        )


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
