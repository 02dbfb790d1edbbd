from fastapi import APIRouter, Depends, HTTPException, Request, status

from matlinks import auth, config
from matlinks.audit import AuditResult, audit_log_event
from matlinks.auth import require_user
from matlinks.db import fetch_one
from matlinks.schemas import AuthUserOut, LoginRequest, TokenResponse
from matlinks.security import create_access_token, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, request: Request):
    email = payload.email.strip().lower()
    identity = auth.login_identity(email, request)
    if auth.is_login_blocked(identity):
        audit_log_event(action="auth.login", result=AuditResult.BLOCKED, actor_email=email)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed login attempts. Try again later.",
        )
    row = fetch_one(
        """
        SELECT id, email, password_hash, role, active
        FROM profiles
        WHERE email = %s
        """,
        (email,),
    )
    if not row or not verify_password(payload.password, row.get("password_hash")):
        auth.record_failed_login(identity)
        audit_log_event(
            action="auth.login",
            result=AuditResult.FAILURE,
            actor_user_id=row.get("id") if row else None,
            actor_email=email,
            details={"reason": "invalid_credentials"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )
    if not row.get("active"):
        auth.record_failed_login(identity)
        audit_log_event(
            action="auth.login",
            result=AuditResult.FAILURE,
            actor_user_id=row["id"],
            actor_email=email,
            details={"reason": "inactive"},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user",
        )
    auth.clear_failed_logins(identity)
    audit_log_event(
        action="auth.login",
        result=AuditResult.SUCCESS,
        actor_user_id=row["id"],
        actor_email=email,
        actor_role=row["role"],
    )
    token = create_access_token(row["id"], row["role"])
    return TokenResponse(
        access_token=token,
        expires_in_minutes=config.API_TOKEN_MINUTES,
        email=row["email"],
        role=row["role"],
    )


@router.get("/me", response_model=AuthUserOut)
def me(user: dict = Depends(require_user)):
    return AuthUserOut.model_validate(user)
