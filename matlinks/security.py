from datetime import datetime, timedelta, timezone
import base64
import hashlib
import hmac
import os

import jwt
from fastapi import HTTPException, status

from matlinks.config import API_JWT_ALGORITHM, API_JWT_SECRET, API_TOKEN_MINUTES

_PBKDF2_ALGO = "pbkdf2_sha256"
_PBKDF2_ITERATIONS = 300000
_SALT_BYTES = 16
_BEARER_PREFIX = "bearer "


def create_access_token(profile_id: int, role: str, minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(profile_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes or API_TOKEN_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, API_JWT_SECRET, algorithm=API_JWT_ALGORITHM)


def verify_access_token(token: str) -> int:
    """Return the profile id carried by a valid token."""
    try:
        payload = jwt.decode(token, API_JWT_SECRET, algorithms=[API_JWT_ALGORITHM])
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing subject",
        )
    try:
        return int(subject)
    except (TypeError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a profile id",
        ) from exc


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    salt = os.urandom(_SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERATIONS)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"{_PBKDF2_ALGO}${_PBKDF2_ITERATIONS}${salt_b64}${digest_b64}"


def verify_password(password: str, encoded_hash: str | None) -> bool:
    if not encoded_hash:
        return False
    try:
        algo, iterations_raw, salt_b64, digest_b64 = encoded_hash.split("$", 3)
        if algo != _PBKDF2_ALGO:
            return False
        iterations = int(iterations_raw)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(digest_b64.encode("ascii"))
    except (ValueError, TypeError):
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)


def bearer_matches_secret(authorization: str | None, secret: str) -> bool:
    """Constant-time check of an ``Authorization: Bearer <secret>`` header. An empty secret never matches."""
    if not secret or not authorization:
        return False
    if not authorization.lower().startswith(_BEARER_PREFIX):
        return False
    presented = authorization[len(_BEARER_PREFIX):].strip()
    return hmac.compare_digest(presented.encode("utf-8"), secret.encode("utf-8"))
