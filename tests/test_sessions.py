"""
tests/test_sessions.py -- SessionManager proactive refresh and revocation.

Time is driven by FakeClock (tests/conftest.py): its sleep() only returns
when the test advances the clock, so a 60-minute token lifetime runs
instantly. Async code runs under asyncio.run() inside plain pytest tests.

Covers:
  - Token issued at t=0 (expires t=60) is refreshed by t=45; a live token is
    available at t=50
  - Refresh keeps rolling: one refresh per lifetime
  - revoke() cancels the pending refresh task before returning
  - A failed refresh (refusal or transport error) is retried; the old token
    stays in use until expiry
  - Failure past expiry drops the session
  - Deactivated accounts are revoked instead of refreshed
  - Repeated schedule/revoke cycles leave no stray tasks
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from auth.errors import RefreshError, TokenError
from auth.identity import LocalIdentityProvider
from auth.models import Identity, TokenGrant
from auth.sessions import SessionManager, refresh_point
from conftest import START, FakeClock, memory_url, settle

IDENTITY = Identity(identity_id="id-a", email="a@x.com")


@pytest.fixture
def provider(clock: FakeClock):
    p = LocalIdentityProvider(db_url=memory_url("sessions"), token_lifetime=timedelta(minutes=60), clock=clock)
    yield p
    p.close()


def _manager(provider, clock: FakeClock, **kwargs) -> SessionManager:
    return SessionManager(
        provider,
        refresh_buffer=timedelta(minutes=15),
        retry_interval=timedelta(minutes=1),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


class FlakyProvider:
    """Wraps a real provider; refresh_token fails the next `failures` times."""

    def __init__(self, inner: LocalIdentityProvider, failures: int, error: Exception | None = None) -> None:
        self.inner = inner
        self.failures = failures
        self.error = error or TokenError("provider unavailable")
        self.refresh_calls = 0

    def issue_token(self, identity: Identity) -> TokenGrant:
        return self.inner.issue_token(identity)

    def refresh_token(self, token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return self.inner.refresh_token(token)


class TestRefreshPoint:
    def test_buffer_before_expiry(self) -> None:
        assert refresh_point(START, START + timedelta(minutes=60), timedelta(minutes=15)) == START + timedelta(
            minutes=45
        )

    def test_short_token_refreshes_halfway(self) -> None:
        at = refresh_point(START, START + timedelta(minutes=10), timedelta(minutes=15))
        assert at == START + timedelta(minutes=5)


class TestProactiveRefresh:
    def test_refreshed_before_expiry(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            sessions = _manager(provider, clock)
            first = sessions.issue(IDENTITY)
            assert first.expires_at == START + timedelta(minutes=60)
            assert first.refresh_at == START + timedelta(minutes=45)
            sessions.schedule_refresh()

            await clock.advance(timedelta(minutes=44))
            assert sessions.refresh_count == 0

            await clock.advance(timedelta(minutes=1))
            assert sessions.refresh_count == 1
            refreshed = sessions.current()
            assert refreshed.token != first.token

            await clock.advance(timedelta(minutes=5))  # t = 50
            live = sessions.current()
            assert live is not None
            assert not live.is_expired(clock.now)
            assert provider.decode_token(live.token)["sub"] == IDENTITY.identity_id
            sessions.revoke()

        asyncio.run(scenario())

    def test_refresh_keeps_rolling(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            sessions = _manager(provider, clock)
            sessions.issue(IDENTITY)
            sessions.schedule_refresh()
            # Refreshes at t=45, 90, 135, 180.
            await clock.advance(timedelta(minutes=180))
            assert sessions.refresh_count == 4
            assert sessions.current() is not None
            sessions.revoke()

        asyncio.run(scenario())

    def test_refresh_now_without_session(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            with pytest.raises(RefreshError):
                await _manager(provider, clock).refresh_now()

        asyncio.run(scenario())


class TestRevocation:
    def test_revoke_cancels_task_synchronously(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            sessions = _manager(provider, clock)
            sessions.issue(IDENTITY)
            task = sessions.schedule_refresh()
            await clock.advance(timedelta(minutes=10))

            sessions.revoke()
            assert sessions.current() is None
            assert sessions.refresh_task is None

            await settle()
            assert task.cancelled()
            await clock.advance(timedelta(minutes=120))
            assert sessions.refresh_count == 0

        asyncio.run(scenario())

    def test_login_logout_cycles_leave_no_tasks(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            sessions = _manager(provider, clock)
            tasks = []
            for _ in range(20):
                sessions.issue(IDENTITY)
                tasks.append(sessions.schedule_refresh())
                await clock.advance(timedelta(seconds=1))
                sessions.revoke()
            await clock.advance(timedelta(seconds=1))
            assert all(t.done() for t in tasks)
            assert clock.sleepers == 0

        asyncio.run(scenario())

    def test_reschedule_replaces_previous_task(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            sessions = _manager(provider, clock)
            sessions.issue(IDENTITY)
            first = sessions.schedule_refresh()
            second = sessions.schedule_refresh()
            await clock.advance(timedelta(seconds=1))
            assert first.cancelled()
            assert not second.done()
            sessions.revoke()

        asyncio.run(scenario())

    def test_expired_session_is_not_current(self, provider, clock: FakeClock) -> None:
        sessions = _manager(provider, clock)
        sessions.issue(IDENTITY)
        clock.tick(timedelta(minutes=60))
        assert sessions.current() is None


class TestRefreshFailure:
    def test_failed_refresh_is_retried(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            flaky = FlakyProvider(provider, failures=2)
            sessions = _manager(flaky, clock)
            first = sessions.issue(IDENTITY)
            sessions.schedule_refresh()

            await clock.advance(timedelta(minutes=45))
            assert flaky.refresh_calls == 1
            # Old token still in use after the failure.
            assert sessions.current().token == first.token

            await clock.advance(timedelta(minutes=2))  # retries at t=46 (fails) and t=47 (succeeds)
            assert flaky.refresh_calls == 3
            assert sessions.refresh_count == 1
            assert sessions.current().token != first.token
            sessions.revoke()

        asyncio.run(scenario())

    def test_transport_error_is_retried(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            flaky = FlakyProvider(provider, failures=1, error=ConnectionError("idp unreachable"))
            sessions = _manager(flaky, clock)
            first = sessions.issue(IDENTITY)
            task = sessions.schedule_refresh()

            await clock.advance(timedelta(minutes=50))
            assert not task.done()
            assert flaky.refresh_calls == 2
            assert sessions.refresh_count == 1
            assert sessions.current().token != first.token
            sessions.revoke()

        asyncio.run(scenario())

    def test_failure_at_expiry_drops_session(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            flaky = FlakyProvider(provider, failures=1000)
            sessions = _manager(flaky, clock)
            sessions.issue(IDENTITY)
            task = sessions.schedule_refresh()

            await clock.advance(timedelta(minutes=59))
            assert sessions.current() is not None

            await clock.advance(timedelta(minutes=2))
            assert sessions.current() is None
            assert task.done()
            # t=45 .. t=59 every minute, then the final attempt at t=60.
            assert flaky.refresh_calls == 16

        asyncio.run(scenario())


class TestDeactivationDetection:
    def test_inactive_account_is_revoked_not_refreshed(self, provider, clock: FakeClock) -> None:
        async def scenario() -> None:
            active = {"id-a": True}
            sessions = _manager(provider, clock, account_check=lambda identity_id: active[identity_id])
            sessions.issue(IDENTITY)
            task = sessions.schedule_refresh()

            active["id-a"] = False
            await clock.advance(timedelta(minutes=45))
            assert sessions.current() is None
            assert sessions.refresh_count == 0
            assert task.done()

        asyncio.run(scenario())
