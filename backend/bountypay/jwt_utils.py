from __future__ import annotations

from datetime import datetime, timedelta

import jwt
from flask import current_app

ALGORITHM = "HS256"


def create_access_token(user_id: int, ttl_seconds: int | None = None) -> str:
    ttl = ttl_seconds or int(current_app.config.get("ACCESS_TOKEN_TTL_SECONDS") or 43200)
    issued = datetime.utcnow()
    claims = {
        "sub": str(int(user_id)),
        "iss": current_app.config.get("TOKEN_ISSUER", "bountypay"),
        "iat": issued,
        "exp": issued + timedelta(seconds=ttl),
        "type": "access",
    }
    return jwt.encode(claims, current_app.config["SECRET_KEY"], algorithm=ALGORITHM)


def user_id_from_token(token: str) -> int | None:
    """Return the subject of a valid access token, or None for anything else."""
    try:
        claims = jwt.decode(
            token,
            current_app.config["SECRET_KEY"],
            algorithms=[ALGORITHM],
            issuer=current_app.config.get("TOKEN_ISSUER", "bountypay"),
        )
    except jwt.PyJWTError:
        return None
    if claims.get("type") != "access":
        return None
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        return None


def bearer_token(header: str | None) -> str | None:
    scheme, _, token = (header or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
