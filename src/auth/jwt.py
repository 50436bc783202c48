from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from src.config import settings


def create_customer_token(user_id: str, email: str | None = None, expires_minutes: int = 60) -> str:
    """Create a customer token shaped like the ones the auth provider issues."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "role": "authenticated",
        "aud": settings.jwt_audience,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_customer_token(token: str) -> dict | None:
    """Decode and validate a customer JWT. Returns claims or None if invalid or expired."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload
