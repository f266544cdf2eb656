from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from core.config import settings


def create_access_token(sub: str, extra: Dict[str, Any] | None = None, minutes: int | None = None) -> str:
    """Issue an access token. Production tokens come from the auth service; this serves tools and tests."""
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=minutes if minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"iat": int(now.timestamp()), "exp": int(exp.timestamp()), "sub": sub, "type": "access"}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access(token: str) -> Dict[str, Any]:
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    if payload.get("type", "access") != "access":
        raise jwt.InvalidTokenError("Not an access token")
    return payload
