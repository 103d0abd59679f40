"""Request middleware and dependencies."""

from .auth import CurrentUser, get_current_user, verify_access_token
from .rate_limit import RATE_LIMIT_AI, limiter

__all__ = [
    "CurrentUser",
    "get_current_user",
    "verify_access_token",
    "RATE_LIMIT_AI",
    "limiter",
]
