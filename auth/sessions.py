"""
auth/sessions.py -- Session issue, proactive refresh and revocation.

The identity provider's tokens live for a fixed lifetime T (60 minutes). A
session is scheduled for refresh at expires_at - buffer (buffer 15 minutes,
i.e. at minute 45), so no in-flight action sees an expired token under normal
operation.

Refresh task:
  One asyncio task per session, owned by this manager. schedule_refresh()
  cancels any previous task before starting a new one, so repeated
  login/logout cycles never leave stray timers. revoke() cancels the task
  synchronously before returning -- a token can never be re-issued after
  logout.

Failure policy:
  A failed refresh is logged and retried after retry_interval; the current
  token stays in use until its own expiry. Only a failure at or after true
  expiry drops the session, which forces re-authentication.

Deactivation detection:
  account_check, when given, is consulted before each refresh. A False answer
  (account gone or deactivated) revokes the session instead of refreshing it.

clock and sleep are injectable so tests can drive a 60-minute lifetime in
microseconds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from auth.errors import AuthError, RefreshError
from auth.identity import IdentityProvider
from auth.models import Identity, Session, TokenGrant
from core.clock import Clock, utcnow
from core.config import get_settings

logger = logging.getLogger("storegate.auth.sessions")

Sleep = Callable[[float], Awaitable[None]]


def refresh_point(issued_at: datetime, expires_at: datetime, buffer: timedelta) -> datetime:
    """expires_at - buffer, kept inside [issued_at, expires_at)."""
    refresh_at = expires_at - buffer
    if refresh_at < issued_at:
        # Short-lived token: refresh halfway through its life.
        refresh_at = issued_at + (expires_at - issued_at) / 2
    if refresh_at >= expires_at:
        refresh_at = expires_at - timedelta(microseconds=1)
    return refresh_at


class SessionManager:
    def __init__(
        self,
        provider: IdentityProvider,
        refresh_buffer: timedelta | None = None,
        retry_interval: timedelta | None = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        account_check: Callable[[str], bool] | None = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.refresh_buffer = refresh_buffer if refresh_buffer is not None else settings.token_refresh_buffer
        self.retry_interval = retry_interval if retry_interval is not None else settings.token_refresh_retry
        self.account_check = account_check
        self._clock = clock
        self._sleep = sleep
        self._session: Session | None = None
        self._task: asyncio.Task | None = None
        self.refresh_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> Session:
        """Ask the provider for a token and make it the current session."""
        grant = self.provider.issue_token(identity)
        session = self._build(identity.identity_id, grant)
        self._session = session
        logger.info("Session issued for %s (expires %s)", identity.identity_id, session.expires_at.isoformat())
        return session

    def current(self) -> Session | None:
        """The live session, or None when there is none or it has expired."""
        session = self._session
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def schedule_refresh(self, session: Session | None = None) -> asyncio.Task:
        """Start the refresh task for session (default: the current one).

        Must be called from a running event loop. Idempotent: an existing task
        is cancelled first.
        """
        if session is not None:
            self._session = session
        if self._session is None:
            raise RefreshError("No session to refresh.")
        self._cancel_task()
        self._task = asyncio.get_running_loop().create_task(self._refresh_loop())
        return self._task

    async def refresh_now(self) -> Session:
        """Replace the current token immediately.

        Raises RefreshError if there is no session, the provider refuses, or the
        provider call itself fails.
        """
        session = self._session
        if session is None:
            raise RefreshError("No session to refresh.")
        try:
            grant = self.provider.refresh_token(session.token)
        except AuthError as exc:
            raise RefreshError(f"Provider refused refresh: {exc.message}") from exc
        except Exception as exc:
            # Transport failures from a hosted provider are retried like refusals.
            raise RefreshError(f"Provider unavailable: {exc}") from exc
        if self._session is not session:
            # Revoked or replaced while the provider call was in flight.
            raise RefreshError("Session changed during refresh.")
        refreshed = self._build(session.identity_id, grant)
        self._session = refreshed
        self.refresh_count += 1
        logger.info("Session token refreshed for %s", session.identity_id)
        return refreshed

    def revoke(self, session: Session | None = None) -> None:
        """Cancel the refresh task and discard local session state.

        When session is given, only revoke if it is still the current one.
        """
        if session is not None and self._session is not None and session.token != self._session.token:
            return
        self._cancel_task()
        if self._session is not None:
            logger.info("Session revoked for %s", self._session.identity_id)
        self._session = None

    @property
    def refresh_task(self) -> asyncio.Task | None:
        return self._task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build(self, identity_id: str, grant: TokenGrant) -> Session:
        issued_at = self._clock()
        return Session(
            token=grant.token,
            identity_id=identity_id,
            issued_at=issued_at,
            expires_at=grant.expires_at,
            refresh_at=refresh_point(issued_at, grant.expires_at, self.refresh_buffer),
        )

    def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def _refresh_loop(self) -> None:
        next_at = self._session.refresh_at if self._session else None
        while self._session is not None and next_at is not None:
            delay = (next_at - self._clock()).total_seconds()
            await self._sleep(max(delay, 0.0))

            session = self._session
            if session is None:
                return
            if self.account_check is not None and not self.account_check(session.identity_id):
                logger.warning("Account %s no longer active; revoking session", session.identity_id)
                self.revoke()
                return

            try:
                refreshed = await self.refresh_now()
            except RefreshError as exc:
                now = self._clock()
                if session.is_expired(now):
                    logger.error("Token refresh failed at expiry; re-authentication required: %s", exc)
                    self.revoke()
                    return
                next_at = min(now + self.retry_interval, session.expires_at)
                logger.warning("Token refresh failed, retrying at %s: %s", next_at.isoformat(), exc)
                continue
            next_at = refreshed.refresh_at


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
