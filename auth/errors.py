"""
auth/errors.py -- Typed failures raised by the authentication gateway.

Every class carries a stable machine-readable code, the HTTP status the API
layer maps it to, and a user-facing message. The API turns these into the
standard {"error": {"code", "message", "detail"}} envelope; the CLI prints the
message.

Taxonomy:
  RateLimited         advisory, client-local; always recoverable by waiting.
  Locked              authoritative; recoverable after locked_until passes or
                      an operator unlocks the account.
  Inactive            authoritative; needs operator reactivation.
  InvalidCredentials  caller error; counts toward the lockout threshold. The
                      message is identical for unknown email and wrong
                      password to prevent account enumeration.
  AccessDenied        verified identity that is not eligible to log in
                      (allow-list, no admin record).
  Forbidden           authenticated but lacking a capability.
  RefreshError        transient; retried on the next scheduled tick.
  TokenError          bearer token is malformed, forged or expired.
  ConcurrencyError    optimistic-concurrency retries exhausted.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import math
from datetime import timedelta


class AuthError(Exception):
    """Base class for gateway failures."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class _RetryableAfter(AuthError):
    """Base for errors that carry a wait time for countdown rendering."""

    def __init__(self, retry_after: timedelta, message: str | None = None) -> None:
        self.retry_after = max(retry_after, timedelta(0))
        super().__init__(message or self.default_message.format(minutes=self.retry_after_minutes))

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after.total_seconds())

    @property
    def retry_after_minutes(self) -> int:
        return max(1, math.ceil(self.retry_after.total_seconds() / 60))


class RateLimited(_RetryableAfter):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many login attempts. Please try again in {minutes} minute(s)."


class Locked(_RetryableAfter):
    status_code = 423
    code = "account_locked"
    default_message = "Account is locked. Try again in {minutes} minute(s)."


class Inactive(AuthError):
    status_code = 403
    code = "account_inactive"
    default_message = "Admin account is inactive."


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class AccessDenied(AuthError):
    status_code = 403
    code = "access_denied"
    default_message = "Access denied for this account."


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class TokenError(AuthError):
    status_code = 401
    code = "invalid_token"
    default_message = "Session token is invalid or expired."


class RefreshError(AuthError):
    status_code = 401
    code = "refresh_failed"
    default_message = "Session refresh failed."


class ConcurrencyError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "The account was modified concurrently. Please retry."
