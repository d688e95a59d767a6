"""
Auth utilities.

Verifies HS256 bearer JWTs issued by the identity provider and extracts the
account id from the `sub` claim. Falls back to the X-User-Id header when
ALLOW_HEADER_AUTH is on (local development and tests).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from soundstage.core.config import settings

logger = logging.getLogger("soundstage")


def verify_jwt(token: str) -> str:
    """
    Verify a bearer JWT and extract the account id.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    account_id = payload.get("sub")
    if not account_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(account_id)


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test account id"),
) -> str:
    """
    Resolve the authenticated account id.

    Priority:
    1. Bearer JWT (when AUTH_JWT_SECRET is configured)
    2. X-User-Id header (when ALLOW_HEADER_AUTH is on)
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and settings.AUTH_JWT_SECRET:
        return verify_jwt(auth_header[7:])

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        return x_user_id.strip()

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
