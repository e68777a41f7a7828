"""Authentication and rate limiting helpers for the API."""

import os
import secrets
import logging
from typing import Optional

from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .services import ANONYMOUS, Caller

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def _matches(token: str, expected: Optional[str]) -> bool:
    return bool(expected) and secrets.compare_digest(token, expected)


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    x_user_id: Optional[str] = Header(default=None),
) -> Caller:
    """Resolve the caller from the Authorization header.

    ``ADMIN_API_KEY`` identifies an administrator. ``API_KEY`` identifies a
    user whose ID is supplied by the upstream session layer in ``X-User-Id``.
    Requests without a token are anonymous.

    Raises:
        HTTPException: 401 for an unknown token, 500 if no key is configured.
    """
    if credentials is None:
        return ANONYMOUS

    admin_key = os.getenv("ADMIN_API_KEY")
    user_key = os.getenv("API_KEY")
    if not admin_key and not user_key:
        logger.error("Neither API_KEY nor ADMIN_API_KEY environment variable is configured")
        raise HTTPException(status_code=500, detail="Server configuration error")

    token = credentials.credentials
    if _matches(token, admin_key):
        return Caller(user_id=x_user_id or None, is_admin=True)
    if _matches(token, user_key):
        return Caller(user_id=x_user_id or None, is_admin=False)
    raise HTTPException(status_code=401, detail="Invalid API key")


async def require_caller(caller: Caller = Security(get_caller)) -> Caller:
    """Reject anonymous requests."""
    if not caller.is_authenticated:
        raise HTTPException(status_code=401, detail="Authentication required")
    return caller


async def require_admin(caller: Caller = Security(get_caller)) -> Caller:
    """Reject anyone but administrators."""
    if not caller.is_authenticated:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller
