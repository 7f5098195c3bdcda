"""
Security utilities

JWT handling for identities issued by the external identity provider.
Credentials are never validated here, only the signed token.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from app.core.config import settings

DEFAULT_ROLE = "Employee"


@dataclass(frozen=True)
class Identity:
    """Verified caller identity"""

    user_id: str
    role: str = DEFAULT_ROLE


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token

    Args:
        data: Payload data to encode in token ("sub" and optionally "role")
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)

    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire, "iat": now})

    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """
    Decode and validate JWT token

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def verify_token(token: str) -> Optional[Identity]:
    """
    Verify token and extract the caller identity

    Returns:
        Identity built from the "sub" and "role" claims, None if invalid
    """
    payload = decode_token(token)
    if payload is None:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return Identity(user_id=str(user_id), role=payload.get("role") or DEFAULT_ROLE)
