"""
Authentication routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from workqueue.api.auth import AppSettings, create_access_token, validate_api_key
from workqueue.types.api import AuthRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange an operator API key for a JWT access token.",
)
async def get_token(request: AuthRequest, settings: AppSettings) -> TokenResponse:
    """
    Get an access token using API key authentication.

    Raises:
        HTTPException: If authentication fails.
    """
    if not validate_api_key(request.api_key, settings):
        logger.warning("Rejected operator API key", extra={"operator": request.operator})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    access_token = create_access_token(request.operator, settings)

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.api_access_token_expire_minutes * 60,
    )
