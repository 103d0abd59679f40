"""Authentication dependency for FastAPI.

Tokens are issued by the identity service of the Personal OS; this gateway
only verifies them. The ``sub`` claim is the user id and ``name`` is the
display name used in prompts.
"""

from dataclasses import dataclass
from typing import Any, Dict

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...config import get_settings


# Security scheme for Bearer token authentication
security = HTTPBearer(auto_error=False)

DEFAULT_DISPLAY_NAME = "User"


class InvalidTokenError(Exception):
    """Raised when a token cannot be verified."""


class TokenExpiredError(InvalidTokenError):
    """Raised when a token has expired."""


@dataclass
class CurrentUser:
    """The authenticated caller.

    Attributes:
        user_id: Unique identifier for the user.
        display_name: Name used when addressing the user in prompts.
    """

    user_id: str
    display_name: str = DEFAULT_DISPLAY_NAME

    @property
    def id(self) -> str:
        """Alias for user_id."""
        return self.user_id


def verify_access_token(token: str) -> Dict[str, Any]:
    """Verify and decode a bearer token.

    Raises:
        TokenExpiredError: If the token has expired.
        InvalidTokenError: If the signature or claims are invalid.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(f"Invalid token: {e}")

    if not payload.get("sub"):
        raise InvalidTokenError("Invalid token: missing subject")
    return payload


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> CurrentUser:
    """FastAPI dependency returning the authenticated user.

    The user is also stored on ``request.state`` so the rate limiter can
    key on it.

    Raises:
        HTTPException (401): If no token is provided or it is invalid.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
    except TokenExpiredError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = CurrentUser(
        user_id=str(payload["sub"]),
        display_name=payload.get("name") or DEFAULT_DISPLAY_NAME,
    )
    request.state.user = user
    return user
