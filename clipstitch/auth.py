"""
API Key Authentication for clipstitch.

Provides a FastAPI dependency for validating API key authentication
on endpoints that accept uploads or change job state.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Clipstitch-API-Key"


async def verify_api_key(
    request: Request,
    x_clipstitch_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    """
    FastAPI dependency to verify the clipstitch API key.

    Reads the settings the application was created with. If API_KEY is
    configured, requests must include a matching
    X-Clipstitch-API-Key header. If not configured, authentication is skipped
    (development mode).

    Raises:
        HTTPException: 401 if API key is missing or invalid
    """
    expected_key = request.app.state.settings.api_key

    if not expected_key:
        logger.debug("API_KEY not configured, skipping authentication")
        return

    if not x_clipstitch_api_key:
        logger.warning(f"Request missing {API_KEY_HEADER} header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": API_KEY_HEADER},
        )

    if x_clipstitch_api_key != expected_key:
        logger.warning("Invalid API key received")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": API_KEY_HEADER},
        )
