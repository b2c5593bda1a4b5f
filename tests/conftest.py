"""
tests/conftest.py -- Shared test fixtures for Storegate.

This module provides:
  - FakeClock: settable clock with an async sleep() that only wakes when the
    test advances time, so a 60-minute token lifetime runs in microseconds
  - make_stack(): directory, ledger, provider, lockout and gateway wired to
    isolated in-memory DBs and one clock
  - api: ApiContext (TestClient + stack + tokens for a seeded admin, editor
    and viewer)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any storegate import so
get_settings() sees them on its first (cached) call.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import. DEBUG lets get_settings()
# auto-generate SECRET_KEY; testserver is TestClient's Host header.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import AuditLedger
from auth.gateway import AuthGateway
from auth.identity import LocalIdentityProvider
from auth.lockout import LockoutManager
from auth.models import AdminAccount
from auth.oauth import build_oauth_registry
from auth.store import AccountDirectory

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until it blocks again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Callable clock plus a matching async sleep.

    Synchronous tests move time with tick(). Async tests use advance(), which
    wakes sleepers in deadline order and sets now to each deadline as it goes.
    """

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self._waiters: list[tuple[datetime, asyncio.Future]] = []

    def __call__(self) -> datetime:
        return self.now

    def tick(self, delta: timedelta) -> None:
        self.now += delta

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + timedelta(seconds=seconds), future))
        await future

    async def advance(self, delta: timedelta) -> None:
        target = self.now + delta
        while True:
            await settle()
            self._waiters = [w for w in self._waiters if not w[1].done()]
            due = sorted((w for w in self._waiters if w[0] <= target), key=lambda w: w[0])
            if not due:
                break
            deadline, future = due[0]
            self._waiters.remove(due[0])
            self.now = max(self.now, deadline)
            future.set_result(None)
        self.now = target
        await settle()

    @property
    def sleepers(self) -> int:
        return sum(1 for _, f in self._waiters if not f.done())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class Stack:
    directory: AccountDirectory
    ledger: AuditLedger
    provider: LocalIdentityProvider
    lockout: LockoutManager
    gateway: AuthGateway

    def add_account(
        self,
        email: str,
        password: str | None = "correct-horse",
        role: str = "admin",
        is_active: bool = True,
    ) -> AdminAccount:
        """Register credentials (when password is given) and the matching account."""
        if password is not None:
            identity_id = self.provider.register(email, password).identity_id
        else:
            identity_id = f"pending:{email}"
        return self.directory.create(
            AdminAccount(identity_id=identity_id, email=email, role=role, is_active=is_active)
        )

    def close(self) -> None:
        self.directory.close()
        self.ledger.close()
        self.provider.close()


def make_stack(clock=None, allowed_emails: frozenset[str] = frozenset(), **gateway_kwargs) -> Stack:
    """Build an isolated gateway stack on fresh named in-memory databases."""
    kwargs = {"clock": clock} if clock is not None else {}
    directory = AccountDirectory(db_url=memory_url("accounts"), **kwargs)
    ledger = AuditLedger(db_url=memory_url("audit"))
    provider = LocalIdentityProvider(db_url=memory_url("identity"), **kwargs)
    lockout = LockoutManager(directory, **kwargs)
    gateway = AuthGateway(
        provider,
        directory,
        lockout,
        ledger,
        allowed_emails=allowed_emails,
        **kwargs,
        **gateway_kwargs,
    )
    return Stack(directory, ledger, provider, lockout, gateway)


@pytest.fixture
def stack(clock: FakeClock) -> Generator[Stack, None, None]:
    s = make_stack(clock)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(stack: Stack):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stack into app.state so TestClient routes see isolated
    test DBs rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.directory = stack.directory
        app.state.ledger = stack.ledger
        app.state.provider = stack.provider
        app.state.lockout = stack.lockout
        app.state.gateway = stack.gateway
        app.state.oauth = build_oauth_registry()
        yield

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    stack: Stack
    admin_token: str
    editor_token: str
    viewer_token: str

    def headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="module")
def api() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. Uses the real
    clock: tokens are checked against wall time by the API.
    """
    stack = make_stack()
    tokens = {}
    for email, role in (("admin@shop.test", "admin"), ("editor@shop.test", "editor"), ("viewer@shop.test", "viewer")):
        account = stack.add_account(email, "testpass123", role=role)
        identity, _ = stack.gateway.authenticate(account.email, "testpass123")
        tokens[role] = stack.provider.issue_token(identity).token

    app.router.lifespan_context = _patch_lifespan(stack)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client, stack, tokens["admin"], tokens["editor"], tokens["viewer"])

    stack.close()
