"""
auth/lockout.py -- Authoritative per-account lockout decisions.

State machine per account:

    UNLOCKED --(failed_attempts reaches max_attempts)--> LOCKED(until = now + window)
    LOCKED   --(now passes locked_until, next authorize())--> UNLOCKED, counter = 0

Pull-based expiry: nothing sweeps expired locks in the background. authorize()
is the only place a lock is released; when it finds locked_until in the past
it clears is_locked and resets failed_attempts in one version-checked write.
Until that write happens the account is still treated as unlocked, because
every decision compares locked_until with the current time rather than
trusting the is_locked flag alone.

Deactivation overrides everything: an inactive account fails authorize()
with Inactive whatever its lock state.

All state changes go through AccountDirectory.update(), the optimistic
concurrency loop, so concurrent failures against one account never undercount.

Failed attempts accumulate only inside the lockout window: a failure more
than one window after the previous failure starts a new count at 1.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.errors import Inactive, Locked
from auth.models import AdminAccount, FailureOutcome
from auth.store import AccountDirectory
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("storegate.auth.lockout")


class LockoutManager:
    def __init__(
        self,
        directory: AccountDirectory,
        max_attempts: int | None = None,
        window: timedelta | None = None,
        clock: Clock = utcnow,
    ) -> None:
        settings = get_settings()
        self.directory = directory
        self.max_attempts = max_attempts if max_attempts is not None else settings.lockout_max_attempts
        self.window = window if window is not None else settings.lockout_window
        self._clock = clock

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def authorize(self, identity_key: str) -> AdminAccount | None:
        """Decide whether identity_key may attempt authentication right now.

        Returns the current account (None for an unknown email, which is left
        to fail credential verification with the uniform message).

        Raises:
            Inactive: the account is deactivated.
            Locked:   a lock is in force; retry_after is the time left.
        """
        account = self.directory.get_by_email(identity_key)
        if account is None:
            return None
        return self.check(account)

    def check(self, account: AdminAccount) -> AdminAccount:
        """authorize() for an account the caller has already resolved.

        Federated logins find the account by identity id, and the provider's
        current email may differ from the stored one.
        """
        if not account.is_active:
            raise Inactive()

        now = self._clock()
        if account.lock_active(now):
            raise Locked(account.locked_until - now)
        if account.is_locked:
            return self._release_expired(account, now)
        return account

    def _release_expired(self, account: AdminAccount, now: datetime) -> AdminAccount:
        def clear(current: AdminAccount) -> AdminAccount | None:
            if not current.is_locked or current.lock_active(now):
                return None
            current.is_locked = False
            current.locked_until = None
            current.failed_attempts = 0
            current.last_failed_at = None
            return current

        released = self.directory.update(account.identity_id, clear)
        if released is None:
            return account
        if released.lock_active(now):
            # Another writer re-locked it between our read and the clear.
            raise Locked(released.locked_until - now)
        logger.info("Lock on %s expired; released on access", released.email)
        return released

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def on_failure(self, identity_key: str) -> FailureOutcome:
        """Record one failed attempt; lock the account when the threshold is reached.

        The increment and the lock are written together in a single
        version-checked update. A failure against an already locked account
        still counts but never extends locked_until.
        """
        account = self.directory.get_by_email(identity_key)
        if account is None:
            return FailureOutcome(attempts=0, remaining=self.max_attempts)

        now = self._clock()
        state: dict = {}

        def increment(current: AdminAccount) -> AdminAccount:
            state["just_locked"] = False
            if current.is_locked and not current.lock_active(now):
                # Expired lock that nobody has released yet: start over.
                current.is_locked = False
                current.locked_until = None
                current.failed_attempts = 0
            window_open = current.last_failed_at is not None and now - current.last_failed_at <= self.window
            current.failed_attempts = current.failed_attempts + 1 if window_open else 1
            current.last_failed_at = now
            if not current.is_locked and current.failed_attempts >= self.max_attempts:
                current.is_locked = True
                current.locked_until = now + self.window
                state["just_locked"] = True
            return current

        stored = self.directory.update(account.identity_id, increment)
        if stored is None:
            return FailureOutcome(attempts=0, remaining=self.max_attempts)

        if state["just_locked"]:
            logger.warning(
                "Account %s locked until %s after %d failed attempts",
                stored.email,
                stored.locked_until.isoformat(),
                stored.failed_attempts,
            )
        return FailureOutcome(
            attempts=stored.failed_attempts,
            locked=stored.lock_active(now),
            just_locked=state["just_locked"],
            locked_until=stored.locked_until,
            remaining=max(0, self.max_attempts - stored.failed_attempts),
        )

    def on_success(self, identity_key: str) -> AdminAccount | None:
        """Reset the counter, clear any lock and stamp last_login_at."""
        account = self.directory.get_by_email(identity_key)
        if account is None:
            return None
        now = self._clock()

        def reset(current: AdminAccount) -> AdminAccount:
            current.failed_attempts = 0
            current.last_failed_at = None
            current.is_locked = False
            current.locked_until = None
            current.last_login_at = now
            return current

        return self.directory.update(account.identity_id, reset)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def unlock(self, identity_id: str) -> AdminAccount | None:
        """Clear a lock immediately (operator intervention)."""

        def clear(current: AdminAccount) -> AdminAccount:
            current.is_locked = False
            current.locked_until = None
            current.failed_attempts = 0
            current.last_failed_at = None
            return current

        account = self.directory.update(identity_id, clear)
        if account is not None:
            logger.info("Account %s unlocked by operator", account.email)
        return account
