"""Bearer-token authentication for the knowledge service."""

import os

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

ALGORITHM = "HS256"

security = HTTPBearer()


def _get_jwt_secret() -> str:
    secret = os.getenv("FLOW_MEMORY_JWT_SECRET")
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="FLOW_MEMORY_JWT_SECRET not configured",
        )
    return secret


def create_token(user_id: str, secret: str | None = None, **claims: str) -> str:
    """Issue an HS256 token whose subject is the user ID."""
    payload = {"sub": user_id, **claims}
    return jwt.encode(payload, secret or _get_jwt_secret(), algorithm=ALGORITHM)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Decode the bearer token and return the caller's user ID."""
    try:
        payload = jwt.decode(credentials.credentials, _get_jwt_secret(), algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from None
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing sub",
        )
    return user_id
