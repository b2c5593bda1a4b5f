"""
auth/client.py -- The login surface handed to UI and CLI layers.

AdminClient is one client's view of the gateway. It owns that client's
advisory attempt limiter and its session, and exposes:

    login(email, password)          -> LoginResult
    login_federated(provider_token) -> LoginResult
    logout()
    current_session()               -> Session | None
    is_authorized(action)           -> bool
    check_account()                 -> bool

Flow for login(): attempt limiter (fast local reject) -> AuthGateway
(lockout, credential verification, directory update, audit) -> SessionManager
(issue token, schedule refresh).

The limiter is optional. Passing rate_limiter=None changes latency and
feedback only; every security decision is still made by the gateway.

login/login_federated/logout are coroutines because they start and cancel the
session refresh task on the running event loop. Gateway calls (bcrypt, SQL)
run in a worker thread so they do not stall that loop.
"""

from __future__ import annotations

import asyncio
import logging

from auth import permissions
from auth.errors import RateLimited
from auth.gateway import AuthGateway
from auth.models import AdminAccount, Identity, LoginResult, Session
from auth.ratelimit import AttemptRateLimiter
from auth.sessions import SessionManager

logger = logging.getLogger("storegate.auth.client")

_FEDERATED_RATE_KEY = "federated"


class AdminClient:
    def __init__(
        self,
        gateway: AuthGateway,
        sessions: SessionManager,
        rate_limiter: AttemptRateLimiter | None = None,
    ) -> None:
        self.gateway = gateway
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self._identity: Identity | None = None
        if sessions.account_check is None:
            sessions.account_check = self._account_is_active

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Password login.

        Raises RateLimited, Locked, Inactive, InvalidCredentials or
        AccessDenied. Lockout and rate-limit errors carry retry_after for a
        countdown.
        """
        self._check_rate_limit(email)
        identity, account = await asyncio.to_thread(self.gateway.authenticate, email, password)
        return self._start_session(email, identity, account)

    async def login_federated(self, provider_token: dict) -> LoginResult:
        """Federated login from an authlib token response.

        The email is unknown until the provider token is verified, so the
        limiter is keyed on a shared federated bucket.
        """
        self._check_rate_limit(_FEDERATED_RATE_KEY)
        identity, account = await asyncio.to_thread(self.gateway.authenticate_federated, provider_token)
        return self._start_session(_FEDERATED_RATE_KEY, identity, account)

    async def logout(self) -> None:
        """Audit the logout, cancel the refresh task, discard the session.

        The refresh task is cancelled before this returns.
        """
        identity = self._identity
        self.sessions.revoke()
        self._identity = None
        if identity is not None:
            self.gateway.record_logout(identity.email)

    # ------------------------------------------------------------------
    # Session / authorization queries
    # ------------------------------------------------------------------

    def current_session(self) -> Session | None:
        return self.sessions.current()

    def is_authorized(self, action: str) -> bool:
        """True when there is a live session whose account grants action.

        The account is re-read on every call; role changes and deactivation
        take effect immediately.
        """
        session = self.sessions.current()
        if session is None:
            return False
        account = self.gateway.directory.get(session.identity_id)
        if account is None or not account.is_active:
            return False
        return permissions.can(account.role, action)

    def check_account(self) -> bool:
        """Re-read the account behind the session; revoke on deactivation.

        Returns True while the session is live and the account active.
        """
        session = self.sessions.current()
        if session is None:
            return False
        if self._account_is_active(session.identity_id):
            return True
        logger.warning("Account %s deactivated; ending session", session.identity_id)
        identity = self._identity
        self.sessions.revoke()
        self._identity = None
        if identity is not None:
            self.gateway.record_logout(identity.email, reason="Session ended: account deactivated")
        return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_rate_limit(self, key: str) -> None:
        if self.rate_limiter is None:
            return
        decision = self.rate_limiter.check_allowed(key)
        if not decision.allowed:
            self.gateway.record_rate_limited(key, decision.retry_after)
            raise RateLimited(decision.retry_after)
        self.rate_limiter.record_attempt(key)

    def _start_session(self, rate_key: str, identity: Identity, account: AdminAccount) -> LoginResult:
        if self.rate_limiter is not None:
            self.rate_limiter.clear(rate_key)
        # A new login replaces any previous session and its timer.
        self.sessions.revoke()
        session = self.sessions.issue(identity)
        self.sessions.schedule_refresh(session)
        self._identity = identity
        return LoginResult(identity=identity, role=account.role, token=session.token, session=session)

    def _account_is_active(self, identity_id: str) -> bool:
        account = self.gateway.directory.get(identity_id)
        return account is not None and account.is_active
