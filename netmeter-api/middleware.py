"""
Bearer-token auth for officer and customer endpoints.

Devices never come through here; they sign each reading instead (ingest.py).
Tokens are HS256 JWTs carrying sub, role, name and email.  The token may be
sent as ``Authorization: Bearer ...`` or, for browser dashboards, as the
``access_token`` cookie.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import CONFIG
from models import CurrentUser, UserRole

logger = logging.getLogger("netmeter-api.middleware")

JWT_ALGORITHM = "HS256"
COOKIE_NAME = "access_token"

bearer = HTTPBearer(auto_error=False)


def create_token(user_id: str, role: str, name: str = "", email: str = "") -> tuple[str, int]:
    """Issue a signed token for *user_id*.  Returns (token, lifetime_seconds)."""
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(hours=CONFIG.jwt_expiry_hours)
    claims = {
        "sub": user_id,
        "role": role,
        "name": name,
        "email": email,
        "iat": issued,
        "exp": issued + lifetime,
    }
    return jwt.encode(claims, CONFIG.jwt_secret, algorithm=JWT_ALGORITHM), int(lifetime.total_seconds())


def decode_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry.  Raises JWTError."""
    return jwt.decode(token, CONFIG.jwt_secret, algorithms=[JWT_ALGORITHM])


def _token_from(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(COOKIE_NAME)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> CurrentUser:
    token = _token_from(request, credentials)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        claims = decode_token(token)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

    try:
        role = UserRole(claims.get("role", ""))
    except ValueError:
        logger.warning("Rejected token for %s: unknown role %r", claims.get("sub"), claims.get("role"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")

    return CurrentUser(
        user_id=claims.get("sub", ""),
        role=role,
        name=claims.get("name", ""),
        email=claims.get("email", ""),
    )


def require_role(*roles: UserRole):
    """Dependency: the current user, if their role is one of *roles*, else 403."""
    allowed = [r.value for r in roles]

    def check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Requires one of: {allowed}")
        return user
    return check
