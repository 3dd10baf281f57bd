from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from tasktrack.domain.errors import AuthError, ErrorCode

JWT_ACCESS_SECRET = os.getenv("JWT_ACCESS_SECRET", "dev-access-secret-change-me")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRES_MIN = int(os.getenv("ACCESS_TOKEN_EXPIRES_MIN", "15"))
REFRESH_TOKEN_EXPIRES_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRES_DAYS", "7"))
PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "310000"))

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _encode(user_id: str, token_type: str, secret: str, ttl: timedelta) -> str:
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": user_id,
        "typ": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def create_access_token(user_id: str, *, expires_minutes: int | None = None) -> str:
    ttl = timedelta(minutes=ACCESS_TOKEN_EXPIRES_MIN if expires_minutes is None else expires_minutes)
    return _encode(user_id, ACCESS_TOKEN_TYPE, JWT_ACCESS_SECRET, ttl)


def create_refresh_token(user_id: str, *, expires_days: int | None = None) -> str:
    ttl = timedelta(days=REFRESH_TOKEN_EXPIRES_DAYS if expires_days is None else expires_days)
    return _encode(user_id, REFRESH_TOKEN_TYPE, JWT_REFRESH_SECRET, ttl)


def _decode(token: str, secret: str, expected_type: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError(ErrorCode.CREDENTIAL_EXPIRED, f"{expected_type.capitalize()} token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError(ErrorCode.CREDENTIAL_INVALID, f"Invalid {expected_type} token") from exc
    if not isinstance(decoded, dict) or decoded.get("typ") != expected_type or not decoded.get("sub"):
        raise AuthError(ErrorCode.CREDENTIAL_INVALID, f"Invalid {expected_type} token")
    return decoded


def decode_access_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_ACCESS_SECRET, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_REFRESH_SECRET, REFRESH_TOKEN_TYPE)


def hash_password(raw_password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), bytes.fromhex(salt), PASSWORD_HASH_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt}${digest.hex()}"


def verify_password(raw_password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = password_hash.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", raw_password.encode(), bytes.fromhex(salt), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


def new_one_time_token() -> tuple[str, str]:
    """Return ``(raw, digest)``; only the digest is persisted."""
    raw = secrets.token_urlsafe(32)
    return raw, hash_one_time_token(raw)


def hash_one_time_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()
