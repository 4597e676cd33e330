from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
import structlog

from procurement.config import settings
from procurement.schemas.context import CallerContext
from procurement.schemas.enums import UserRole

logger = structlog.get_logger()


# ---------- token generation ----------

def create_access_token(
    user_id: str,
    role: str,
    email: Optional[str] = None,
    emergency_access: bool = False,
    expires_minutes: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    minutes = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    claims = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
        "type": "access",
    }
    if email:
        claims["email"] = email
    # Emergency access is granted by whoever signs tokens, never by the client.
    if emergency_access:
        claims["emergency_access"] = True
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ---------- token verification ----------

def decode_token(token: str) -> dict:
    """Decode and verify a JWT token. Raises JWTError on failure."""
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> dict:
    """Verify an access token and return its claims."""
    payload = decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    return payload


def context_from_claims(payload: dict) -> CallerContext:
    try:
        role = UserRole(payload["role"])
    except (KeyError, ValueError) as exc:
        raise JWTError(f"Unknown role claim: {payload.get('role')!r}") from exc
    return CallerContext(
        user_id=payload["sub"],
        role=role,
        email=payload.get("email"),
        emergency_access=bool(payload.get("emergency_access", False)),
    )
