"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API clients and the CLI.

Both converge on an AdminAccount that is re-read from the account directory
on every request, so deactivation and role changes apply immediately.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_capability(action) wraps get_current_account() and raises HTTP 403
when the Authorization Gate says no.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. It does not import api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth import permissions
from auth.models import AdminAccount


def bearer_token(request: Request) -> str | None:
    """Return the raw token from the cookie or Authorization header, if any."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_account(request: Request) -> AdminAccount | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    token = bearer_token(request)
    if not token:
        return None
    payload = request.app.state.provider.decode_token(token)
    if payload is None:
        return None
    directory = request.app.state.directory
    account = directory.get(payload["sub"])
    if account is None and payload.get("email"):
        # Pre-created accounts are linked to their credentials by email.
        account = directory.get_by_email(payload["email"])
    if account is None or not account.is_active:
        return None
    return account


def get_current_account(request: Request) -> AdminAccount:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: AdminAccount = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account


def require_capability(action: str) -> Callable[[Request], AdminAccount]:
    """Build a dependency that requires the caller's role to grant action.

    Use as a FastAPI dependency:
        @router.post("/accounts")
        async def route(account: AdminAccount = Depends(require_capability(ACCOUNTS_MANAGE))): ...
    """

    def dependency(request: Request) -> AdminAccount:
        account = get_current_account(request)
        if not permissions.can(account.role, action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Missing capability: {action}."},
            )
        return account

    return dependency
