"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is per-IP HTTP flood protection in front of the gateway. It is neither
the per-account lockout (auth/lockout.py) nor the client attempt limiter
(auth/ratelimit.py); requests it rejects never reach the gateway and are not
audited.

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    """Per-IP limit for POST /auth/login, read at request time (LOGIN_RATE_LIMIT)."""
    return get_settings().login_rate_limit
