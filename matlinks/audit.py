"""
Audit trail for staff actions, logins and automated billing runs.

Rows land in ``audit_log``. Writing one never fails the request that
triggered it: errors are logged and dropped.
"""

import json
import logging
import re
from contextvars import ContextVar
from enum import Enum
from typing import Any

from fastapi import Request

from matlinks.db import execute

logger = logging.getLogger(__name__)


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    DENIED = "denied"


_MASKED = "***"
_SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "token",
    "access_token",
    "authorization",
    "secret",
    "jwt",
    "api_key",
    "client_secret",
    "stripe_signature",
    "card_number",
    "cvc",
}
# 13 to 19 digits, optionally grouped by spaces or dashes
_CARD_NUMBER = re.compile(r"\b(?:\d[ -]?){9,15}(\d{4})\b")
_MAX_TEXT_LEN = 300
_CURRENT_CORRELATION_ID: ContextVar[str] = ContextVar("audit_correlation_id", default="")
_CURRENT_IP_ADDRESS: ContextVar[str] = ContextVar("audit_ip_address", default="")


def _mask_text(value: str) -> str:
    return _CARD_NUMBER.sub(lambda match: f"****{match.group(1)}", value)[:_MAX_TEXT_LEN]


def sanitize_details(value: Any) -> Any:
    """Mask secrets by key and card numbers by shape; enums and dates become strings."""
    if isinstance(value, dict):
        return {
            str(key): _MASKED if str(key).lower() in _SENSITIVE_KEYS else sanitize_details(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [sanitize_details(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    return _mask_text(str(value))


def build_request_context(request: Request) -> dict[str, str]:
    headers = getattr(request, "headers", {}) or {}
    request_state = getattr(request, "state", None)
    correlation_id = (
        getattr(request_state, "correlation_id", "")
        or headers.get("x-correlation-id")
        or headers.get("x-request-id")
        or ""
    )
    # uvicorn resolves proxy headers into request.client when API_PROXY_HEADERS is on
    ip_address = request.client.host if request.client else "unknown"
    return {"ip_address": ip_address, "correlation_id": correlation_id}


def set_current_request_context(*, correlation_id: str, ip_address: str) -> None:
    _CURRENT_CORRELATION_ID.set((correlation_id or "").strip())
    _CURRENT_IP_ADDRESS.set((ip_address or "").strip())


def clear_current_request_context() -> None:
    _CURRENT_CORRELATION_ID.set("")
    _CURRENT_IP_ADDRESS.set("")


def audit_log_event(
    *,
    action: str,
    result: AuditResult | str,
    actor_user_id: int | None = None,
    actor_email: str | None = None,
    actor_role: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    outcome = AuditResult(result)
    try:
        execute(
            """
            INSERT INTO audit_log (
                actor_user_id, actor_email, actor_role, action, resource_type, resource_id,
                result, ip_address, correlation_id, details, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, now())
            """,
            (
                actor_user_id,
                (actor_email or "").strip().lower() or None,
                actor_role,
                action,
                resource_type,
                resource_id,
                outcome.value,
                _CURRENT_IP_ADDRESS.get() or None,
                _CURRENT_CORRELATION_ID.get() or None,
                json.dumps(sanitize_details(details or {}), ensure_ascii=True),
            ),
        )
    except Exception:
        logger.warning("audit write failed for action=%s", action, exc_info=True)


def audit_user_action(user: dict, action: str, resource_type: str, resource_id, details: dict | None = None) -> None:
    """Record a successful action taken by an authenticated profile."""
    role = user.get("role")
    audit_log_event(
        action=action,
        result=AuditResult.SUCCESS,
        actor_user_id=user.get("id"),
        actor_email=user.get("email"),
        actor_role=role.value if isinstance(role, Enum) else role,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
    )


def audit_system_event(
    source: str,
    action: str,
    result: AuditResult | str = AuditResult.SUCCESS,
    resource_type: str | None = None,
    resource_id: str | None = None,
    details: dict | None = None,
) -> None:
    """Record work done without a signed-in profile (scheduler runs, processor webhooks)."""
    audit_log_event(
        action=action,
        result=result,
        actor_email=f"system:{source}",
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
    )
