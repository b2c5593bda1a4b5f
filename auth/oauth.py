"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry for federated login.

Reads configuration from core.config.get_settings() to decide which
providers are active. Only providers with both client ID and secret
configured get registered.

Security notes:
  [H1] Email verification is mandatory. extract_verified_identity() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified email could be an address an attacker typed in without
       owning it.

  OAuth state (CSRF protection) is handled by authlib through Starlette's
  SessionMiddleware between the authorization redirect and the callback.

Supported providers:
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("storegate.auth.oauth")

_PROVIDER_LABELS = {"google": "Google"}


def build_oauth_registry() -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    cfg = get_settings()
    registry = OAuth()
    if cfg.google_client_id and cfg.google_client_secret:
        registry.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return registry


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured provider.

    Used by GET /api/v1/auth/providers so the login page knows which
    federated buttons to render.
    """
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    return providers


def extract_verified_identity(token: dict) -> tuple[str, str, str, str]:
    """Extract (provider, subject, email, display_name) from a token response.

    token is the dict authlib returns from authorize_access_token(): the OIDC
    claims sit under "userinfo". The provider name is read from the "provider"
    key when the caller tagged it, otherwise from the issuer, and defaults to
    "google".

    [H1] The email claim is only accepted when email_verified is True.
    Providers that omit email_verified are treated as unverified.

    Raises:
        ValueError: missing userinfo, unverified email, or missing claims.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("no userinfo in token response")

    provider = token.get("provider") or _provider_from_issuer(userinfo.get("iss", ""))

    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider}: email is not verified")

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider}: missing email or sub claim in userinfo")

    return provider, str(subject), email, userinfo.get("name") or ""


def _provider_from_issuer(issuer: str) -> str:
    if "accounts.google.com" in issuer:
        return "google"
    return "google" if not issuer else "oidc"
