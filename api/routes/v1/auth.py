"""
api/routes/v1/auth.py -- Login, refresh, logout and identity endpoints.

Routes:
  POST /api/v1/auth/login      -- password login; returns token, sets JWT cookie
  POST /api/v1/auth/refresh    -- exchange a live token for a fresh one
  POST /api/v1/auth/logout     -- audits the logout, clears the cookie
  POST /api/v1/auth/password   -- change own password (requires auth + current password)
  GET  /api/v1/auth/me         -- current account + capabilities (requires auth)
  GET  /api/v1/auth/providers  -- enabled federated providers (public)
  GET  /api/v1/auth/oauth/{provider}     -- redirect to the provider (authlib)
  GET  /api/v1/auth/callback/{provider}  -- federated login, same response as /login

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute)
       on top of the per-account lockout the gateway enforces.
  [C1] The identity provider equalizes bcrypt timing for unknown emails.
  [M5] Cache-Control: no-store on every response that carries a token.
  Gateway errors (Locked, Inactive, InvalidCredentials, AccessDenied) are
  raised through to the AuthError handler in api/main.py, which renders the
  standard envelope with retry_after for countdowns.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    OAuthProviderInfo,
    PasswordChangeRequest,
    RefreshResponse,
    me_from_account,
)
from auth import permissions
from auth.dependencies import bearer_token, get_current_account, try_get_current_account
from auth.errors import InvalidCredentials, TokenError
from auth.gateway import AuthGateway
from auth.models import AdminAccount, Identity, TokenGrant
from auth.oauth import get_enabled_providers
from auth.sessions import refresh_point
from core.clock import utcnow
from core.config import get_settings

logger = logging.getLogger("storegate.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:      public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:    bearer token required (validated by provider)
# - POST /api/v1/auth/logout:     public -- audits only when a valid token is presented
# - GET  /api/v1/auth/providers:  public -- login page renders federated buttons
# - GET  /api/v1/auth/oauth/*:    public -- federated login entry and callback
# - GET  /api/v1/auth/me:         requires auth (get_current_account)
# - GET  /api/v1/auth/can/*:      requires auth
# - POST /api/v1/auth/password:   requires auth (get_current_account)
router = APIRouter()


def _request_context(request: Request) -> dict[str, str]:
    """Client IP and user agent for the audit entry."""
    return {
        "ip_address": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent", "")[:255],
    }


def _token_response(content: dict, grant: TokenGrant) -> JSONResponse:
    settings = get_settings()
    resp = JSONResponse(status_code=200, content=content)
    max_age = max(0, int((grant.expires_at - utcnow()).total_seconds()))
    resp.set_cookie(
        "access_token",
        value=grant.token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max_age,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_response(request: Request, identity: Identity, account: AdminAccount) -> JSONResponse:
    grant = request.app.state.provider.issue_token(identity)
    refresh_at = refresh_point(utcnow(), grant.expires_at, get_settings().token_refresh_buffer)
    content = LoginResponse(
        identity_id=account.identity_id,
        email=account.email,
        role=account.role,
        access_token=grant.token,
        expires_at=grant.expires_at,
        refresh_at=refresh_at,
    ).model_dump(mode="json")
    return _token_response(content, grant)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Lockout, deactivation, allow-list and credential checks all happen inside
    AuthGateway.authenticate(), which also writes the audit entry.
    """
    gateway: AuthGateway = request.app.state.gateway
    identity, account = gateway.authenticate(body.email, body.password, _request_context(request))
    return _login_response(request, identity, account)


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a crafted
    name cannot select an unregistered client.
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"Provider not enabled: {provider}."},
        )
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", response_model=LoginResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Finish the authorization code flow and log in through the gateway.

    authlib verifies the OAuth state stored in the session (CSRF). Linking,
    provisioning and lockout checks happen in authenticate_federated().
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"Provider not enabled: {provider}."},
        )
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc.error)
        raise InvalidCredentials("Federated login failed.") from exc

    gateway: AuthGateway = request.app.state.gateway
    identity, account = gateway.authenticate_federated({**token, "provider": provider}, _request_context(request))
    return _login_response(request, identity, account)


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request) -> JSONResponse:
    """Issue a fresh token for a still-valid one.

    The account is re-read: a deactivated account cannot refresh.
    """
    token = bearer_token(request)
    account = try_get_current_account(request)
    if token is None or account is None:
        raise TokenError()
    grant = request.app.state.provider.refresh_token(token)
    refresh_at = refresh_point(utcnow(), grant.expires_at, get_settings().token_refresh_buffer)
    content = RefreshResponse(
        access_token=grant.token,
        expires_at=grant.expires_at,
        refresh_at=refresh_at,
    ).model_dump(mode="json")
    return _token_response(content, grant)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Clear the JWT cookie. Audits the logout when the caller is authenticated."""
    account = try_get_current_account(request)
    if account is not None:
        request.app.state.gateway.record_logout(account.email, context=_request_context(request))
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured federated providers (empty when none are set)."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/me", response_model=MeResponse)
async def me(account: AdminAccount = Depends(get_current_account)) -> MeResponse:
    """Return identity and capability information for the caller."""
    return me_from_account(account)


@router.get("/auth/can/{action}")
async def can(action: str, account: AdminAccount = Depends(get_current_account)) -> dict:
    """Answer "may I?" for one capability, for UI layers that toggle controls."""
    if action not in permissions.ALL_CAPABILITIES:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_capability", "message": f"Unknown capability: {action}."},
        )
    return {"action": action, "allowed": permissions.can(account.role, action)}


@limiter.limit(login_limit)
@router.post("/auth/password")
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    account: AdminAccount = Depends(get_current_account),
) -> JSONResponse:
    """Change the caller's local password.

    The current password is verified again; a wrong one counts towards the
    account lockout like a failed login.
    """
    gateway: AuthGateway = request.app.state.gateway
    gateway.change_password(account, body.current_password, body.new_password, _request_context(request))
    resp = JSONResponse(content={"message": "Password changed."})
    resp.headers["Cache-Control"] = "no-store"
    return resp
