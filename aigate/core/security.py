from datetime import datetime, timedelta, timezone

import jwt

from aigate.core.config import settings


def create_access_token(user_id: str, expires_minutes: int = 30) -> str:
    """Issue an access token. Production tokens come from the auth service; this mirrors its claims."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
