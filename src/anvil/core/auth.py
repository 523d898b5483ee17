"""API key authentication for REST and JWT verification for realtime clients."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

security = HTTPBearer()


async def verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    settings = request.app.state.settings
    if credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


def create_token(user_id: str, secret: str, algorithm: str = "HS256", expire_hours: int = 24) -> str:
    """Create a signed token whose subject is ``user_id``."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(hours=expire_hours),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> str:
    """Verify a token and return its subject. Raises jwt.InvalidTokenError on failure."""
    payload = jwt.decode(token, secret, algorithms=[algorithm])
    subject = payload.get("sub") or payload.get("id")
    if not subject:
        raise jwt.InvalidTokenError("Token has no subject")
    return str(subject)
