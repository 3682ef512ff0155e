"""
medqueue/auth/security.py — JWT verification and role-based permissions.

Tokens are issued by the clinic's identity service; this API only verifies
them. create_token() exists for local tooling and tests.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from pydantic import BaseModel

from medqueue.config import get_settings

settings = get_settings()


class TokenPayload(BaseModel):
    sub: str        # user_id
    role: str
    org: str | None = None  # organization the user works for
    iat: datetime
    exp: datetime


def create_token(
    user_id: str,
    role: str,
    expires_delta: timedelta | None = None,
    organization_id: str | None = None,
) -> str:
    now = datetime.now(tz=timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": user_id,
        "role": role,
        "org": organization_id,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        ValueError: If token is invalid, expired, or malformed.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(**payload)
    except JWTError as exc:
        raise ValueError(f"Invalid token: {exc}") from exc


# ─── RBAC ─────────────────────────────────────────────────────────────────────

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "superadmin":   {"read", "write", "delete", "admin"},
    "admin":        {"read", "write", "delete", "admin"},
    "doctor":       {"read", "write"},
    "nurse":        {"read", "write"},
    "receptionist": {"read", "write"},
    "patient":      {"read"},
}


def has_permission(role: str, permission: str) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, set())
