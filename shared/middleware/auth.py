"""
shared/middleware/auth.py
FastAPI dependency guarding admin endpoints with a shared API key.
Clients send it in the X-Admin-Key header.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from config.settings import settings


async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    """Reject the request unless X-Admin-Key matches ADMIN_API_KEY."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access is disabled",
        )
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin key required",
        )
    if not hmac.compare_digest(x_admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )
