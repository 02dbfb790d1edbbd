import json

import pytest

from matlinks import audit
from matlinks.audit import AuditResult
from matlinks.auth import Role


@pytest.fixture
def writes(monkeypatch):
    calls = []
    monkeypatch.setattr(audit, "execute", lambda query, params: calls.append(params))
    yield calls
    audit.clear_current_request_context()


def test_sanitize_masks_secret_keys_and_card_numbers():
    cleaned = audit.sanitize_details(
        {
            "Password": "hunter2",
            "nested": {"stripe_signature": "t=1,v1=abc", "note": "card 4242 4242 4242 4242 declined"},
            "plan": Role.OWNER,
            "codes": ("SPRING", 7),
        }
    )

    assert cleaned["Password"] == "***"
    assert cleaned["nested"]["stripe_signature"] == "***"
    assert cleaned["nested"]["note"] == "card ****4242 declined"
    assert cleaned["plan"] == "owner"
    assert cleaned["codes"] == ["SPRING", 7]


def test_sanitize_leaves_short_numbers_alone():
    assert audit.sanitize_details({"invoice": "in_1234567", "amount": 4999}) == {
        "invoice": "in_1234567",
        "amount": 4999,
    }


def test_event_carries_request_context(writes):
    audit.set_current_request_context(correlation_id="cid-9", ip_address="10.0.0.5")

    audit.audit_log_event(action="auth.login", result="blocked", actor_email=" Ana@Example.com ")

    params = writes[0]
    assert params[1] == "ana@example.com"
    assert params[6] == "blocked"
    assert params[7] == "10.0.0.5"
    assert params[8] == "cid-9"
    assert json.loads(params[9]) == {}


def test_unknown_result_is_rejected(writes):
    with pytest.raises(ValueError):
        audit.audit_log_event(action="auth.login", result="maybe")
    assert writes == []


def test_write_failure_does_not_raise(monkeypatch):
    def _down(query, params):
        raise RuntimeError("db down")

    monkeypatch.setattr(audit, "execute", _down)
    audit.audit_log_event(action="gym.create", result=AuditResult.SUCCESS)


def test_user_action_records_role(writes, owner_user):
    audit.audit_user_action(owner_user, "gym.update", "gym", 5, {"name": "North"})

    params = writes[0]
    assert params[0] == owner_user["id"]
    assert params[2] == "owner"
    assert params[5] == "5"
    assert json.loads(params[9]) == {"name": "North"}


def test_system_event_uses_source_as_actor(writes):
    audit.audit_system_event("stripe", "webhook.stripe", resource_type="stripe_event", resource_id="evt_1")

    params = writes[0]
    assert params[0] is None
    assert params[1] == "system:stripe"
    assert params[6] == "success"
