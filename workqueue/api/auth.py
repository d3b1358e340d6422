"""
Authentication and authorization utilities.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from workqueue.config import Settings, get_settings

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    operator: str
    exp: datetime


class AuthenticatedOperator(BaseModel):
    """Authenticated operator context."""

    operator: str


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was created with."""
    return getattr(request.app.state, "settings", None) or get_settings()


AppSettings = Annotated[Settings, Depends(get_app_settings)]


def create_access_token(
    operator: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        operator: The operator identifier.
        settings: Application settings holding the signing key.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": operator,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str, settings: Settings) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.
        settings: Application settings holding the signing key.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    operator = payload.get("sub")
    if not operator:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        operator=operator,
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    settings: AppSettings,
) -> AuthenticatedOperator:
    """
    FastAPI dependency to get the current authenticated operator.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials, settings)
    return AuthenticatedOperator(operator=token_data.operator)


# Type alias for dependency injection
CurrentOperator = Annotated[AuthenticatedOperator, Depends(get_current_operator)]


def validate_api_key(api_key: str, settings: Settings) -> bool:
    """
    Validate an operator API key against the configured keys.

    Args:
        api_key: The API key to validate.
        settings: Application settings.

    Returns:
        True if the API key is valid.
    """
    if not api_key:
        return False
    return any(
        hmac.compare_digest(api_key.encode(), known.encode())
        for known in settings.admin_api_keys
    )
