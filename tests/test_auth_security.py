import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from matlinks import auth, config
from matlinks.auth import Role, current_user, has_role, require_roles
from matlinks.routes import auth as auth_routes
from matlinks.schemas import LoginRequest
from matlinks.security import (
    bearer_matches_secret,
    create_access_token,
    hash_password,
    verify_access_token,
    verify_password,
)


class _DummyClient:
    host = "127.0.0.1"


class _DummyRequest:
    client = _DummyClient()


def test_password_hash_roundtrip():
    encoded = hash_password("StrongPwd123!")
    assert verify_password("StrongPwd123!", encoded) is True
    assert verify_password("WrongPwd123!", encoded) is False
    assert verify_password("anything", None) is False
    assert verify_password("anything", "md5$1$x$y") is False


def test_access_token_roundtrip():
    token = create_access_token(42, "owner")
    assert verify_access_token(token) == 42


def test_verify_access_token_rejects_missing_subject():
    token = jwt.encode({"exp": 9999999999}, config.API_JWT_SECRET, algorithm=config.API_JWT_ALGORITHM)
    with pytest.raises(HTTPException) as exc:
        verify_access_token(token)
    assert exc.value.status_code == 401
    assert "subject" in str(exc.value.detail).lower()


def test_verify_access_token_rejects_tampering():
    token = create_access_token(42, "admin") + "x"
    with pytest.raises(HTTPException) as exc:
        verify_access_token(token)
    assert exc.value.status_code == 401


def test_current_user_checks_active_profile(monkeypatch):
    token = create_access_token(7, "instructor")
    monkeypatch.setattr(
        auth, "fetch_one", lambda query, params: {"id": params[0], "role": "instructor", "active": True}
    )
    user = current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=token))
    assert user["id"] == 7

    monkeypatch.setattr(auth, "fetch_one", lambda query, params: {"id": 7, "role": "instructor", "active": False})
    with pytest.raises(HTTPException) as exc:
        current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=token))
    assert exc.value.status_code == 403


def test_has_role_with_closed_role_set():
    assert has_role({"role": "owner"}, (Role.ADMIN, Role.OWNER)) is True
    assert has_role({"role": "student"}, (Role.ADMIN, Role.OWNER)) is False
    assert has_role({"role": "superuser"}, (Role.ADMIN,)) is False
    assert has_role({"role": "student"}, ()) is True


def test_require_roles_guard():
    guard = require_roles(Role.ADMIN, Role.OWNER)
    assert guard(user={"id": 1, "role": "admin"})["id"] == 1
    with pytest.raises(HTTPException) as exc:
        guard(user={"id": 2, "role": "instructor"})
    assert exc.value.status_code == 403
    assert "admin, owner" in exc.value.detail


def test_bearer_matches_secret():
    assert bearer_matches_secret("Bearer s3cret", "s3cret") is True
    assert bearer_matches_secret("bearer s3cret", "s3cret") is True
    assert bearer_matches_secret("Bearer wrong", "s3cret") is False
    assert bearer_matches_secret("s3cret", "s3cret") is False
    assert bearer_matches_secret(None, "s3cret") is False
    assert bearer_matches_secret("Bearer ", "") is False


def test_login_rate_limit_blocks_after_repeated_failures(monkeypatch):
    monkeypatch.setattr(config, "API_LOGIN_RATE_LIMIT_ATTEMPTS", 2)
    monkeypatch.setattr(config, "API_LOGIN_RATE_LIMIT_WINDOW_SECONDS", 300)
    monkeypatch.setattr(config, "API_LOGIN_BLOCK_SECONDS", 60)
    monkeypatch.setattr(
        auth_routes,
        "fetch_one",
        lambda *_args, **_kwargs: {
            "id": 5,
            "email": "coach@example.com",
            "password_hash": "hash",
            "active": True,
            "role": "instructor",
        },
    )
    monkeypatch.setattr(auth_routes, "verify_password", lambda *_args, **_kwargs: False)
    monkeypatch.setattr(auth_routes, "audit_log_event", lambda **kwargs: None)

    payload = LoginRequest(email="coach@example.com", password="bad-password")
    request = _DummyRequest()

    with pytest.raises(HTTPException) as first:
        auth_routes.login(payload, request)
    assert first.value.status_code == 401

    with pytest.raises(HTTPException) as second:
        auth_routes.login(payload, request)
    assert second.value.status_code == 401

    with pytest.raises(HTTPException) as third:
        auth_routes.login(payload, request)
    assert third.value.status_code == 429


def test_login_writes_audit_event_on_failure(monkeypatch):
    events = []
    monkeypatch.setattr(auth_routes, "fetch_one", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(auth_routes, "audit_log_event", lambda **kwargs: events.append(kwargs))

    with pytest.raises(HTTPException):
        auth_routes.login(LoginRequest(email="nobody@example.com", password="wrong"), _DummyRequest())

    assert events[-1]["action"] == "auth.login"
    assert events[-1]["result"] == "failure"
    assert events[-1]["details"]["reason"] == "invalid_credentials"


def test_login_success_returns_token(monkeypatch):
    events = []
    monkeypatch.setattr(
        auth_routes,
        "fetch_one",
        lambda *_args, **_kwargs: {
            "id": 21,
            "email": "admin@example.com",
            "password_hash": "hash",
            "active": True,
            "role": "admin",
        },
    )
    monkeypatch.setattr(auth_routes, "verify_password", lambda *_args, **_kwargs: True)
    monkeypatch.setattr(auth_routes, "create_access_token", lambda *_args, **_kwargs: "token")
    monkeypatch.setattr(auth_routes, "audit_log_event", lambda **kwargs: events.append(kwargs))

    result = auth_routes.login(LoginRequest(email=" Admin@Example.com ", password="correct"), _DummyRequest())

    assert result.access_token == "token"
    assert result.role == Role.ADMIN
    assert events[-1]["result"] == "success"
    assert events[-1]["actor_email"] == "admin@example.com"


def test_inactive_user_cannot_log_in(monkeypatch):
    monkeypatch.setattr(
        auth_routes,
        "fetch_one",
        lambda *_args, **_kwargs: {"id": 3, "email": "x@example.com", "password_hash": "h", "active": False, "role": "student"},
    )
    monkeypatch.setattr(auth_routes, "verify_password", lambda *_args, **_kwargs: True)
    monkeypatch.setattr(auth_routes, "audit_log_event", lambda **kwargs: None)

    with pytest.raises(HTTPException) as exc:
        auth_routes.login(LoginRequest(email="x@example.com", password="pw"), _DummyRequest())
    assert exc.value.status_code == 403


def test_validate_security_settings_prod_rejects_defaults(monkeypatch):
    monkeypatch.setattr(config, "APP_ENV", "prod")
    monkeypatch.setattr(config, "API_JWT_SECRET", "CHANGE_ME_IN_ENV")
    monkeypatch.setattr(config, "API_ADMIN_PASSWORD", "change-me")

    with pytest.raises(RuntimeError):
        config.validate_security_settings()


def test_validate_security_settings_prod_requires_cron_secret(monkeypatch):
    monkeypatch.setattr(config, "APP_ENV", "prod")
    monkeypatch.setattr(config, "API_JWT_SECRET", "x" * 40)
    monkeypatch.setattr(config, "API_ADMIN_PASSWORD", "StrongPass123!")
    monkeypatch.setattr(config, "CRON_SECRET", "short")

    with pytest.raises(RuntimeError) as exc:
        config.validate_security_settings()
    assert "CRON_SECRET" in str(exc.value)
