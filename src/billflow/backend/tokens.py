"""Signed access tokens for the local backend."""

import uuid
from datetime import datetime, timedelta, timezone

import jwt

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24


def create_access_token(
    user_id: str,
    session_id: str,
    aal: str,
    secret: str,
    expires_hours: int = ACCESS_TOKEN_EXPIRE_HOURS,
) -> str:
    """Create a JWT access token carrying the session's assurance level."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "sid": session_id,
        "aal": aal,
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> dict | None:
    """Decode and validate a JWT token; None if expired or invalid."""
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
