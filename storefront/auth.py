"""
Bearer-token authentication for the Storefront service.

Tokens are HS256 JWTs issued by the identity provider with three claims:
``sub`` (numeric user id), ``email`` and ``role`` (``customer`` or ``admin``).
"""
from datetime import datetime, timedelta
from typing import Optional
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from . import config

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

bearer_scheme = HTTPBearer()
optional_bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Caller identity taken from a verified token."""
    id: int
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def create_access_token(claims: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign a token for the given claims.

    Args:
        claims: sub, email and role
        expires_delta: Lifetime override; defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Compact JWT string
    """
    lifetime = expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = dict(claims, exp=datetime.utcnow() + lifetime)
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> CurrentUser:
    """
    Verify a token and map its claims onto ``CurrentUser``.

    Raises:
        HTTPException: 401 if the signature, expiry or claims are invalid
    """
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        claims = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        sub, email, role = claims.get("sub"), claims.get("email"), claims.get("role")
        if not (sub and email and role):
            raise unauthorized
        return CurrentUser(id=int(sub), email=email, role=role, token=token)
    except (JWTError, ValueError) as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise unauthorized


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:
    """FastAPI dependency: the authenticated caller, 401 otherwise."""
    return decode_access_token(credentials.credentials)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme)
) -> Optional[CurrentUser]:
    """FastAPI dependency: the caller if a token was sent, else None."""
    if credentials is None:
        return None
    return decode_access_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency for back-office routes.

    Raises:
        HTTPException: 403 unless the caller has the admin role
    """
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def ensure_owner_or_admin(current_user: CurrentUser, owner_id: int, action: str = "access this resource") -> None:
    """
    Allow the resource owner and admins through.

    Raises:
        HTTPException: 403 for anyone else
    """
    if current_user.is_admin or current_user.id == owner_id:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Not authorized to {action}")
