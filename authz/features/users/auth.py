"""
Bearer token helpers. Tokens are HS256 JWTs whose ``sub`` is the user id.
"""
from datetime import timedelta
from typing import Optional
import jwt
from fastapi import HTTPException, status

from authz.core import config
from authz.core.database.base import utcnow


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer token and return its payload.

    Raises:
        HTTPException: 401 if the token is expired or invalid
    """
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


def create_access_token(user_id: str, expires_in: Optional[timedelta] = timedelta(hours=1)) -> str:
    """Issue a token for ``user_id``; used by seed scripts and tests."""
    payload = {"sub": user_id, "iat": utcnow()}
    if expires_in is not None:
        payload["exp"] = utcnow() + expires_in
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
