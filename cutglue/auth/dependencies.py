"""
FastAPI dependencies for service authentication and caller identity.

Security:
- Shared service key compared in constant time
- The end user is named by the trusted caller in X-User-ID
- Without a configured key every authenticated route is refused

The Stripe webhook route does not use these dependencies; it is
authenticated by the Stripe signature.
"""

import logging
import re
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from cutglue.config import get_settings
from cutglue.observability.logging import set_user_id

logger = logging.getLogger(__name__)

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")


async def require_service_key(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """
    Validate the shared service key.

    Raises:
        HTTPException 401: missing, malformed or wrong key
        HTTPException 503: no key configured
    """
    expected = get_settings().service.api_key
    if not expected:
        logger.error("SERVICE_API_KEY not configured; rejecting authenticated request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service authentication not configured",
        )

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication. Provide 'Authorization: Bearer {key}'.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Use: 'Bearer {key}'",
        )

    if not secrets.compare_digest(parts[1].encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Service key validation failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service key",
        )


async def get_current_user_id(
    request: Request,
    _: None = Depends(require_service_key),
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """
    End user the request acts for.

    Returns:
        str: User id from X-User-ID

    Raises:
        HTTPException 400: header missing or malformed
    """
    if not x_user_id or not _USER_ID_PATTERN.match(x_user_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing or invalid X-User-ID header",
        )

    request.state.user_id = x_user_id
    set_user_id(x_user_id)
    return x_user_id
