# auth_dep.py
# Dependency that authenticates the request using a Bearer JWT and returns
# the canonical wallet address stored in its 'sub' claim.

from fastapi import HTTPException, Header
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone

from . import config


def create_access_token(subject: str, now: datetime | None = None) -> str:
    """Create a short-lived JWT. 'subject' is the wallet address."""
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=config.JWT_TTL_MIN)).timestamp()),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def get_current_wallet(authorization: str | None = Header(default=None)) -> str:
    # Expect: Authorization: Bearer <token>
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()

    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token payload (no sub)")

    return sub
