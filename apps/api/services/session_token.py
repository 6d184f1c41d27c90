"""Signed session tokens identifying the account a ledger request acts for."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"
SESSION_AUDIENCE = "token-ledger"


@dataclass
class SessionClaims:
    user_id: str
    email: Optional[str]
    expires_at: int


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``; returns the token and its expiry."""
    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "aud": SESSION_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> SessionClaims:
    """Validate signature, audience, type and subject. Raises ``ValueError``."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=subject,
        email=str(payload.get("email", "")).strip() or None,
        expires_at=int(payload.get("exp", 0)),
    )
