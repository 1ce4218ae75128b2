"""
Auth utilities for the WishBubble API.

Session handling lives in the upstream auth provider; by the time a request
reaches this service the authenticated user id is forwarded in X-User-Id.
"""
from fastapi import Header, HTTPException
from typing import Optional
import logging

logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, description="Authenticated user id from the auth gateway")
) -> str:
    """
    Extract current user ID from request headers.

    Raises:
        HTTPException 401: Missing authentication
    """
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()

    logger.debug("[auth] request without X-User-Id")
    raise HTTPException(
        status_code=401,
        detail="Missing X-User-Id header",
    )
