"""Authentication and the single role guard used by every route."""

import threading
import time
from enum import Enum

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from matlinks import config
from matlinks.db import fetch_one
from matlinks.security import verify_access_token


class Role(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


MANAGER_ROLES = (Role.ADMIN, Role.OWNER)
STAFF_ROLES = (Role.ADMIN, Role.OWNER, Role.INSTRUCTOR)

auth_scheme = HTTPBearer(auto_error=True)
_LOGIN_LOCK = threading.Lock()
_LOGIN_FAILURES: dict[str, list[float]] = {}
_LOGIN_BLOCKED_UNTIL: dict[str, float] = {}


def login_identity(email: str, request: Request) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{email.lower()}@{host}"


def is_login_blocked(identity: str) -> bool:
    now = time.time()
    with _LOGIN_LOCK:
        blocked_until = _LOGIN_BLOCKED_UNTIL.get(identity, 0.0)
        if blocked_until <= now:
            _LOGIN_BLOCKED_UNTIL.pop(identity, None)
            return False
        return True


def record_failed_login(identity: str) -> None:
    now = time.time()
    threshold = now - config.API_LOGIN_RATE_LIMIT_WINDOW_SECONDS
    with _LOGIN_LOCK:
        failures = [ts for ts in _LOGIN_FAILURES.get(identity, []) if ts >= threshold]
        failures.append(now)
        _LOGIN_FAILURES[identity] = failures
        if len(failures) >= config.API_LOGIN_RATE_LIMIT_ATTEMPTS:
            _LOGIN_BLOCKED_UNTIL[identity] = now + config.API_LOGIN_BLOCK_SECONDS
            _LOGIN_FAILURES.pop(identity, None)


def clear_failed_logins(identity: str) -> None:
    with _LOGIN_LOCK:
        _LOGIN_FAILURES.pop(identity, None)
        _LOGIN_BLOCKED_UNTIL.pop(identity, None)


def reset_login_state() -> None:
    with _LOGIN_LOCK:
        _LOGIN_FAILURES.clear()
        _LOGIN_BLOCKED_UNTIL.clear()


def get_profile(profile_id: int) -> dict:
    row = fetch_one(
        """
        SELECT id, email, first_name, last_name, role, active
        FROM profiles
        WHERE id = %s
        """,
        (profile_id,),
    )
    if not row or not row.get("active"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return row


def current_user(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)) -> dict:
    profile_id = verify_access_token(credentials.credentials)
    return get_profile(profile_id)


def has_role(user: dict, allowed: tuple[Role, ...]) -> bool:
    if not allowed:
        return True
    try:
        role = Role(user.get("role"))
    except ValueError:
        return False
    return role in allowed


def require_roles(*allowed: Role):
    """Build a dependency that resolves the caller once and checks its role."""

    def _guard(user: dict = Depends(current_user)) -> dict:
        if not has_role(user, allowed):
            names = ", ".join(role.value for role in allowed)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"One of these roles is required: {names}",
            )
        return user

    return _guard


require_user = require_roles()
require_staff = require_roles(*STAFF_ROLES)
require_manager = require_roles(*MANAGER_ROLES)
