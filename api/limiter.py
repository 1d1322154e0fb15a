"""
api/limiter.py -- Login throttling for the auth routes.

One Limiter instance is shared by api/main.py (SlowAPIMiddleware reads it from
app.state.limiter) and api/routes/v1/auth.py (@limiter.limit on the login
route). Two instances would keep two counter stores and neither would ever
reach the limit.

Counters are keyed by client address and held in process memory, so each
worker enforces LOGIN_RATE_LIMIT on its own. Credential stuffing spread over
many addresses is not stopped here; the bcrypt/argon2 work factor is the
backstop for that.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Current LOGIN_RATE_LIMIT, read when the limit is evaluated rather than at import."""
    return get_settings().login_rate_limit
