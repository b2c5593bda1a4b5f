"""
auth/gateway.py -- Server-side login orchestration.

Password login, in order:
  1. LockoutManager.authorize(email)      -- Inactive / Locked, authoritative
  2. provider.verify_credentials()        -- InvalidCredentials counts a failure
  3. allow-list check                     -- AccessDenied
  4. account directory lookup             -- a verified identity without an
                                             admin record is InvalidCredentials
  5. LockoutManager.on_success()          -- reset counter, stamp last login
  6. audit login_success

Federated login verifies the provider token first (there is no email to look
up before that), links or provisions the account, then runs the same
lockout/active checks against the account it found.

Audit contract:
  Every call writes exactly one ledger entry before it returns or raises.
  Ledger failures never change the decision: _audit() catches WriteError,
  reports it on the "storegate.audit.errors" logger and carries on.
  The optional context mapping (client IP, user agent) passed by the HTTP
  layer is merged into the entry's metadata.

Messages are uniform for unknown email, wrong password and missing admin
record, so the response never reveals whether an account exists.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from audit.models import (
    LOGIN_BLOCKED,
    LOGIN_FAILED,
    LOGIN_SUCCESS,
    LOGOUT,
    PASSWORD_CHANGE,
    STATUS_BLOCKED,
    STATUS_FAILED,
    STATUS_SUCCESS,
    AuditEntry,
)
from audit.store import AuditLedger, WriteError
from auth.errors import AccessDenied, AuthError, ConcurrencyError, Inactive, InvalidCredentials, Locked
from auth.identity import IdentityProvider
from auth.lockout import LockoutManager
from auth.models import AdminAccount, Identity
from auth.store import AccountDirectory, normalize_email
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("storegate.auth")
audit_error_logger = logging.getLogger("storegate.audit.errors")

Context = Mapping[str, str] | None


class AuthGateway:
    """Authoritative login decisions plus their audit trail.

    Usage:
        gateway = AuthGateway(provider, directory, lockout, ledger)
        identity, account = gateway.authenticate("a@x.com", "secret")
    """

    def __init__(
        self,
        provider: IdentityProvider,
        directory: AccountDirectory,
        lockout: LockoutManager,
        ledger: AuditLedger,
        allowed_emails: frozenset[str] | None = None,
        auto_provision: bool | None = None,
        default_role: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.directory = directory
        self.lockout = lockout
        self.ledger = ledger
        self.allowed_emails = allowed_emails if allowed_emails is not None else settings.allowed_admin_emails
        self.auto_provision = auto_provision if auto_provision is not None else settings.federated_auto_provision
        self.default_role = default_role or settings.federated_default_role
        self._clock = clock

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str, context: Context = None) -> tuple[Identity, AdminAccount]:
        """Run the full password login decision.

        Raises Locked, Inactive, InvalidCredentials or AccessDenied. Exactly
        one audit entry is written on every path.
        """
        key = normalize_email(email)

        try:
            self.lockout.authorize(key)
        except AuthError as exc:
            self._audit_refusal(LOGIN_BLOCKED, key, exc, context)
            raise

        try:
            identity = self.provider.verify_credentials(key, password)
        except InvalidCredentials:
            self._record_failure(key, LOGIN_FAILED, context)
            raise

        self._check_allowed(key, identity.email, context)

        account = self.directory.get(identity.identity_id) or self.directory.get_by_email(identity.email)
        if account is None:
            self._audit(LOGIN_FAILED, key, STATUS_FAILED, "No admin record for verified identity", context)
            raise InvalidCredentials()

        return identity, self._succeed(key, account, "Successful login", context, provider=identity.provider)

    def _record_failure(self, key: str, action: str, context: Context) -> None:
        try:
            outcome = self.lockout.on_failure(key)
        except AuthError:
            self._audit(action, key, STATUS_FAILED, "Directory update failed", context)
            raise
        if outcome.just_locked:
            lock_for = outcome.locked_until - self._clock()
            self._audit(
                LOGIN_BLOCKED,
                key,
                STATUS_BLOCKED,
                f"Account locked after {outcome.attempts} failed attempts",
                context,
                attempt=outcome.attempts,
                lock_minutes=int(self.lockout.window / timedelta(minutes=1)),
            )
            raise Locked(lock_for)
        if outcome.attempts:
            self._audit(
                action,
                key,
                STATUS_FAILED,
                f"Invalid password ({outcome.remaining} attempts left)",
                context,
                attempt=outcome.attempts,
                attempts_remaining=outcome.remaining,
            )
        else:
            self._audit(action, key, STATUS_FAILED, "Invalid credentials", context)

    # ------------------------------------------------------------------
    # Federated login
    # ------------------------------------------------------------------

    def authenticate_federated(self, provider_token: dict, context: Context = None) -> tuple[Identity, AdminAccount]:
        """Verify a federated token, link or provision the account, and log in.

        The account is found by identity id first, so a provider that now
        reports a different email still lands on the same (possibly locked or
        deactivated) record.

        Raises InvalidCredentials, AccessDenied, Inactive, Locked or
        ConcurrencyError.
        """
        try:
            identity = self.provider.verify_federated(provider_token)
        except InvalidCredentials:
            self._audit(LOGIN_FAILED, "unknown", STATUS_FAILED, "Federated token rejected", context)
            raise

        key = identity.email
        self._check_allowed(key, identity.email, context)

        account = self.directory.get(identity.identity_id) or self.directory.get_by_email(identity.email)
        reason = "Successful federated login"
        if account is None:
            if not self.auto_provision:
                self._audit(LOGIN_FAILED, key, STATUS_FAILED, "No admin record for federated identity", context)
                raise InvalidCredentials()
            account = self._provision(identity, context)
            reason = "First-time federated login; account provisioned"

        try:
            account = self.lockout.check(account)
        except AuthError as exc:
            self._audit_refusal(LOGIN_BLOCKED, key, exc, context)
            raise

        return identity, self._succeed(key, account, reason, context, provider=identity.provider)

    def _provision(self, identity: Identity, context: Context) -> AdminAccount:
        try:
            return self.directory.create(
                AdminAccount(
                    identity_id=identity.identity_id,
                    email=identity.email,
                    display_name=identity.display_name,
                    role=self.default_role,
                )
            )
        except IntegrityError as exc:
            # A concurrent first login created it first.
            account = self.directory.get(identity.identity_id)
            if account is None:
                self._audit(LOGIN_FAILED, identity.email, STATUS_FAILED, "Account provisioning failed", context)
                raise ConcurrencyError() from exc
            return account

    # ------------------------------------------------------------------
    # Self-service password change
    # ------------------------------------------------------------------

    def change_password(
        self,
        account: AdminAccount,
        current_password: str,
        new_password: str,
        context: Context = None,
    ) -> None:
        """Replace the caller's local password after re-verifying the current one.

        A wrong current password counts towards lockout like a failed login.
        Raises Locked, Inactive, InvalidCredentials or ConcurrencyError.
        """
        key = account.email
        current = self.directory.get(account.identity_id) or account
        try:
            self.lockout.check(current)
        except AuthError as exc:
            self._audit_refusal(PASSWORD_CHANGE, key, exc, context)
            raise

        try:
            identity = self.provider.verify_credentials(key, current_password)
        except InvalidCredentials:
            self._record_failure(key, PASSWORD_CHANGE, context)
            raise

        if not self.provider.set_password(identity.identity_id, new_password):
            self._audit(PASSWORD_CHANGE, key, STATUS_FAILED, "No local credentials", context)
            raise InvalidCredentials()
        self._audit(PASSWORD_CHANGE, key, STATUS_SUCCESS, "Password changed", context)
        logger.info("Password changed for %s", key)

    # ------------------------------------------------------------------
    # Other audited events
    # ------------------------------------------------------------------

    def record_rate_limited(self, identity_key: str, retry_after: timedelta, context: Context = None) -> None:
        """Audit an attempt stopped by the client-side limiter."""
        self._audit(
            LOGIN_BLOCKED,
            normalize_email(identity_key),
            STATUS_BLOCKED,
            "Rate limited by client attempt limiter",
            context,
            retry_after_seconds=int(retry_after.total_seconds()),
        )

    def record_logout(self, identity_key: str, reason: str = "User logged out", context: Context = None) -> None:
        self._audit(LOGOUT, normalize_email(identity_key), STATUS_SUCCESS, reason, context)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_allowed(self, key: str, email: str, context: Context) -> None:
        if self.allowed_emails and normalize_email(email) not in self.allowed_emails:
            self._audit(LOGIN_BLOCKED, key, STATUS_BLOCKED, "Email not on admin allow-list", context)
            raise AccessDenied()

    def _succeed(self, key: str, account: AdminAccount, reason: str, context: Context, **metadata) -> AdminAccount:
        try:
            updated = self.lockout.on_success(account.email)
        except AuthError:
            self._audit(LOGIN_FAILED, key, STATUS_FAILED, "Directory update failed", context)
            raise
        self._audit(LOGIN_SUCCESS, key, STATUS_SUCCESS, reason, context, **metadata)
        return updated or account

    def _audit_refusal(self, action: str, key: str, exc: AuthError, context: Context) -> None:
        if isinstance(exc, Locked):
            self._audit(
                action,
                key,
                STATUS_BLOCKED,
                f"Account locked for {exc.retry_after_minutes} minutes",
                context,
                retry_after_seconds=exc.retry_after_seconds,
            )
        elif isinstance(exc, Inactive):
            self._audit(action, key, STATUS_BLOCKED, "Account inactive", context)
        else:
            failed_action = LOGIN_FAILED if action == LOGIN_BLOCKED else action
            self._audit(failed_action, key, STATUS_FAILED, "Directory update failed", context)

    def _audit(
        self,
        action: str,
        identity_key: str,
        status: str,
        reason: str,
        context: Context = None,
        **metadata,
    ) -> None:
        entry = AuditEntry(
            action=action,
            identity_key=identity_key,
            status=status,
            reason=reason,
            timestamp=self._clock(),
            metadata={**(context or {}), **metadata},
        )
        try:
            self.ledger.append(entry)
        except WriteError:
            audit_error_logger.exception(
                "Audit write failed (action=%s identity=%s status=%s); decision stands",
                action,
                identity_key,
                status,
            )
