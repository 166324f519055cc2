from __future__ import annotations

import hashlib
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))


def hash_password(raw_password: str) -> str:
    salt = os.getenv("PASSWORD_SALT", "hrbac-dev-salt")
    return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()


def create_access_token(
    *,
    user_id: str,
    org_id: str,
    root_org_id: str,
    permissions: list[str] | None = None,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "sub": user_id,
        "org_id": org_id,
        "root_org_id": root_org_id,
        "permissions": sorted(set(permissions or [])),
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    decoded = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    for claim in ("sub", "org_id"):
        if not isinstance(decoded.get(claim), str):
            raise ValueError(f"Missing token claim: {claim}")
    decoded.setdefault("root_org_id", decoded["org_id"])
    return decoded
