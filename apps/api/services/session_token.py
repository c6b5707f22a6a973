"""Signed session tokens carrying the caller's identity and role."""

from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from models.enums import UserRole
from services.clock import utcnow


SESSION_TOKEN_TYPE = "billing_session"


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    role: UserRole = UserRole.USER,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    now = utcnow()
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": UserRole(role).value,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode a session token; raises ValueError for anything not issued by us."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    try:
        UserRole(str(payload.get("role", UserRole.USER.value)))
    except ValueError as exc:
        raise ValueError("Session token has an unknown role.") from exc

    return payload
