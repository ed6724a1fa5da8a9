"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply per-route limits with @limiter.limit(): login, registration,
second-factor verification, and every "send me an email" request.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    """Limit string for credential-guessing routes, read from LOGIN_RATE_LIMIT."""
    return get_settings().login_rate_limit


def email_limit() -> str:
    """Limit string for routes that send mail, read from EMAIL_RATE_LIMIT."""
    return get_settings().email_rate_limit
