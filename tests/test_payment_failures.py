from datetime import datetime, timedelta, timezone

import pytest

from matlinks import config, payment_failures
from matlinks.errors import AppError, ErrorKind
from matlinks.payment_utils import PaymentFailureType, RetryStatus, advance_attempt_status
from tests.conftest import ScriptedCursor
from matlinks.payments_gateway import RetryOutcome

NOW = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)


def _stored_row(failure_date=NOW, resolved_at=None, attempts=None) -> dict:
    if attempts is None:
        attempts = [
            {
                "id": f"in_1_failure_retry_{n}",
                "payment_id": "in_1_failure",
                "attempt_number": n,
                "scheduled_date": (failure_date + timedelta(days=offset)).isoformat(),
                "status": "scheduled",
            }
            for n, offset in ((1, 1), (2, 3), (3, 7))
        ]
    return {
        "id": "in_1_failure",
        "user_id": 42,
        "amount": 4999,
        "currency": "usd",
        "failure_date": failure_date,
        "failure_type": "card_declined",
        "failure_message": "Card was declined by the issuer",
        "payment_method": "pm_1",
        "retry_attempts": attempts,
        "subscription_id": "sub_1",
        "invoice_id": "in_1",
        "max_retries": 3,
        "resolved_at": resolved_at,
    }


@pytest.fixture
def claimed(monkeypatch):
    """Claims attempts on the stored row without a database."""
    calls = []

    def _claim(payment_id, attempt_id, now):
        calls.append(attempt_id)
        record = payment_failures.record_from_row(_stored_row())
        return advance_attempt_status(record, attempt_id, RetryStatus.PROCESSING, now=now)

    monkeypatch.setattr(payment_failures, "claim_attempt", _claim)
    return calls


@pytest.fixture
def saved(monkeypatch):
    """Captures every persisted copy of a record instead of writing it."""
    calls = []
    monkeypatch.setattr(
        payment_failures,
        "save_attempts",
        lambda record, now, resolved=False: calls.append((record, resolved)),
    )
    return calls


def test_record_failed_payment_unknown_customer(monkeypatch):
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: None)
    with pytest.raises(AppError) as exc:
        payment_failures.record_failed_payment("cus_x", "in_1", 4999, "usd", "pm_1", "card_declined", now=NOW)
    assert exc.value.kind == ErrorKind.NOT_FOUND


def test_record_failed_payment_stores_schedule_and_starts_dunning(monkeypatch):
    workflows = []
    updates = []
    inserted = []
    monkeypatch.setattr(config, "DUNNING_RETRY_SCHEDULE", [1, 3, 7])
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: {"id": 9, "profile_id": 42})
    monkeypatch.setattr(
        payment_failures, "execute_returning_one", lambda query, params: inserted.append(params) or {"id": params[0]}
    )
    monkeypatch.setattr(payment_failures, "execute", lambda query, params: updates.append(params))
    monkeypatch.setattr(
        payment_failures.dunning, "create_dunning_workflow", lambda *args: workflows.append(args) or True
    )

    record = payment_failures.record_failed_payment(
        "cus_1", "in_1", 4999, "usd", "pm_1", "insufficient_funds", subscription_id="sub_1", now=NOW
    )

    assert record.id == "in_1_failure"
    assert record.user_id == 42
    assert record.failure_type == PaymentFailureType.INSUFFICIENT_FUNDS
    assert [a.scheduled_date for a in record.retry_attempts] == [NOW + timedelta(days=d) for d in (1, 3, 7)]
    assert inserted[0][0] == "in_1_failure"
    assert updates == [(NOW, 9)]
    assert workflows == [(42, "in_1_failure", PaymentFailureType.INSUFFICIENT_FUNDS, 4999, "usd", NOW)]


def test_record_failed_payment_is_idempotent_per_invoice(monkeypatch):
    workflows = []

    def _fetch_one(query, params):
        if "FROM members" in query:
            return {"id": 9, "profile_id": 42}
        return _stored_row()

    monkeypatch.setattr(payment_failures, "fetch_one", _fetch_one)
    monkeypatch.setattr(payment_failures, "execute_returning_one", lambda query, params: None)
    monkeypatch.setattr(payment_failures.dunning, "create_dunning_workflow", lambda *args: workflows.append(args))

    record = payment_failures.record_failed_payment("cus_1", "in_1", 4999, "usd", "pm_1", "card_declined", now=NOW)

    assert record.id == "in_1_failure"
    assert workflows == []


def test_execute_retry_success_resolves_and_cancels_rest(monkeypatch, claimed, saved):
    resolved = []
    monkeypatch.setattr(
        payment_failures.payments_gateway,
        "retry_invoice",
        lambda invoice_id: RetryOutcome(success=True, message="Payment retry succeeded", payment_intent_id="pi_1"),
    )
    monkeypatch.setattr(payment_failures, "mark_resolved", lambda record, now: resolved.append(record))
    record = payment_failures.record_from_row(_stored_row())

    result = payment_failures.execute_retry(record, record.retry_attempts[0], NOW)

    assert result.success is True
    assert result.payment_intent_id == "pi_1"
    assert claimed == ["in_1_failure_retry_1"]
    final = resolved[0]
    assert [a.status for a in final.retry_attempts] == [
        RetryStatus.SUCCEEDED,
        RetryStatus.CANCELLED,
        RetryStatus.CANCELLED,
    ]


def test_execute_retry_failure_keeps_later_attempts(monkeypatch, claimed, saved):
    monkeypatch.setattr(
        payment_failures.payments_gateway,
        "retry_invoice",
        lambda invoice_id: RetryOutcome(success=False, message="card_declined"),
    )
    record = payment_failures.record_from_row(_stored_row())

    result = payment_failures.execute_retry(record, record.retry_attempts[0], NOW)

    assert result.success is False
    final, resolved = saved[-1]
    assert resolved is False
    assert final.retry_attempts[0].status == RetryStatus.FAILED
    assert final.retry_attempts[0].result == "card_declined"
    assert final.retry_attempts[1].status == RetryStatus.SCHEDULED


def test_execute_retry_gateway_exception_counts_as_failure(monkeypatch, claimed, saved):
    def _boom(invoice_id):
        raise ConnectionError("network")

    monkeypatch.setattr(payment_failures.payments_gateway, "retry_invoice", _boom)
    record = payment_failures.record_from_row(_stored_row())

    result = payment_failures.execute_retry(record, record.retry_attempts[0], NOW)

    assert result.success is False
    assert result.message == "network"
    assert saved[-1][0].retry_attempts[0].status == RetryStatus.FAILED


def test_process_scheduled_retries_only_runs_due_attempts(monkeypatch):
    due = _stored_row(failure_date=NOW - timedelta(days=2))
    due["id"] = "due_failure"
    not_due = _stored_row(failure_date=NOW)
    executed = []
    monkeypatch.setattr(payment_failures, "fetch_all", lambda query: [due, not_due])
    monkeypatch.setattr(
        payment_failures,
        "execute_retry",
        lambda record, attempt, now: executed.append((record.id, attempt.attempt_number)),
    )

    assert payment_failures.process_scheduled_retries(NOW) == 1
    assert executed == [("due_failure", 1)]


def test_process_scheduled_retries_keeps_going_after_an_error(monkeypatch):
    first = _stored_row(failure_date=NOW - timedelta(days=2))
    second = _stored_row(failure_date=NOW - timedelta(days=2))
    second["id"] = "second_failure"
    calls = []

    def _execute(record, attempt, now):
        calls.append(record.id)
        if record.id == "in_1_failure":
            raise RuntimeError("db hiccup")

    monkeypatch.setattr(payment_failures, "fetch_all", lambda query: [first, second])
    monkeypatch.setattr(payment_failures, "execute_retry", _execute)

    assert payment_failures.process_scheduled_retries(NOW) == 1
    assert calls == ["in_1_failure", "second_failure"]


def test_retry_now_rejects_resolved_payment(monkeypatch):
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: _stored_row(resolved_at=NOW))
    with pytest.raises(AppError) as exc:
        payment_failures.retry_failed_payment_now("in_1_failure", NOW)
    assert exc.value.kind == ErrorKind.CONFLICT


def test_retry_now_rejects_exhausted_payment(monkeypatch):
    row = _stored_row()
    for attempt in row["retry_attempts"]:
        attempt["status"] = "failed"
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: row)
    with pytest.raises(AppError) as exc:
        payment_failures.retry_failed_payment_now("in_1_failure", NOW)
    assert exc.value.message == "No retry attempts remaining"


def test_retry_now_unknown_payment(monkeypatch):
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: None)
    with pytest.raises(AppError) as exc:
        payment_failures.retry_failed_payment_now("missing", NOW)
    assert exc.value.kind == ErrorKind.NOT_FOUND


def test_resolve_by_invoice(monkeypatch):
    resolved = []
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: _stored_row())
    monkeypatch.setattr(payment_failures, "mark_resolved", lambda record, now: resolved.append(record))

    assert payment_failures.resolve_by_invoice("in_1", NOW) is True
    assert all(a.status == RetryStatus.CANCELLED for a in resolved[0].retry_attempts)


def test_describe_failed_payment():
    row = _stored_row(failure_date=NOW - timedelta(days=2))
    row["retry_attempts"][0]["status"] = "failed"
    row["customer_name"] = "Ana Silva"

    described = payment_failures.describe_failed_payment(row, NOW)

    assert described["attempts_made"] == 1
    assert described["exhausted"] is False
    assert described["next_retry_date"] == NOW + timedelta(days=1)
    assert described["customer_name"] == "Ana Silva"
    assert described["attempt_lines"][0].startswith("Attempt #1 - Failed")


def _in_flight_row(started_at):
    row = _stored_row(failure_date=NOW - timedelta(days=4))
    row["retry_attempts"][0]["status"] = "processing"
    row["retry_attempts"][0]["executed_date"] = started_at.isoformat()
    return row


def _saved_statuses(cursor):
    updates = cursor.queries_containing("UPDATE failed_payments")
    return [attempt["status"] for attempt in updates[-1][0].adapted]


def test_claim_attempt_marks_processing_under_row_lock(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor([_stored_row(failure_date=NOW - timedelta(days=2))])
    monkeypatch.setattr(payment_failures, "transaction", scripted_transaction(cursor))

    record = payment_failures.claim_attempt("in_1_failure", "in_1_failure_retry_1", NOW)

    assert record.retry_attempts[0].status == RetryStatus.PROCESSING
    assert "FOR UPDATE" in cursor.statements[0][0]
    assert _saved_statuses(cursor) == ["processing", "scheduled", "scheduled"]


def test_claim_attempt_refuses_second_attempt_while_one_is_in_flight(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor([_in_flight_row(NOW - timedelta(minutes=1))])
    monkeypatch.setattr(payment_failures, "transaction", scripted_transaction(cursor))

    with pytest.raises(AppError) as exc:
        payment_failures.claim_attempt("in_1_failure", "in_1_failure_retry_2", NOW)

    assert exc.value.kind == ErrorKind.CONFLICT
    assert cursor.queries_containing("UPDATE failed_payments") == []


def test_claim_attempt_refuses_resolved_payment(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor([])
    monkeypatch.setattr(payment_failures, "transaction", scripted_transaction(cursor))

    with pytest.raises(AppError) as exc:
        payment_failures.claim_attempt("in_1_failure", "in_1_failure_retry_1", NOW)
    assert exc.value.kind == ErrorKind.CONFLICT


def test_retry_now_refuses_payment_with_attempt_in_flight(monkeypatch):
    charged = []
    monkeypatch.setattr(payment_failures, "fetch_one", lambda query, params: _in_flight_row(NOW - timedelta(minutes=1)))
    monkeypatch.setattr(
        payment_failures.payments_gateway,
        "retry_invoice",
        lambda invoice_id: charged.append(invoice_id) or RetryOutcome(success=True, message="ok"),
    )

    with pytest.raises(AppError) as exc:
        payment_failures.retry_failed_payment_now("in_1_failure", NOW)

    assert exc.value.kind == ErrorKind.CONFLICT
    assert charged == []


def test_process_scheduled_retries_skips_payment_with_attempt_in_flight(monkeypatch):
    executed = []
    released = []
    monkeypatch.setattr(payment_failures, "fetch_all", lambda query: [_in_flight_row(NOW - timedelta(minutes=1))])
    monkeypatch.setattr(payment_failures, "execute_retry", lambda record, attempt, now: executed.append(attempt.id))
    monkeypatch.setattr(payment_failures, "release_stale_attempt", lambda payment_id, now: released.append(payment_id))

    assert payment_failures.process_scheduled_retries(NOW) == 0
    assert executed == []
    assert released == []


def test_process_scheduled_retries_releases_stale_attempt(monkeypatch):
    executed = []
    released = []
    monkeypatch.setattr(config, "RETRY_PROCESSING_TIMEOUT_MINUTES", 30)
    monkeypatch.setattr(payment_failures, "fetch_all", lambda query: [_in_flight_row(NOW - timedelta(hours=2))])
    monkeypatch.setattr(payment_failures, "execute_retry", lambda record, attempt, now: executed.append(attempt.id))
    monkeypatch.setattr(payment_failures, "release_stale_attempt", lambda payment_id, now: released.append(payment_id))

    assert payment_failures.process_scheduled_retries(NOW) == 0
    assert released == ["in_1_failure"]
    assert executed == []


def test_release_stale_attempt_fails_it(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor([_in_flight_row(NOW - timedelta(hours=2))])
    monkeypatch.setattr(config, "RETRY_PROCESSING_TIMEOUT_MINUTES", 30)
    monkeypatch.setattr(payment_failures, "transaction", scripted_transaction(cursor))

    assert payment_failures.release_stale_attempt("in_1_failure", NOW) is True
    assert _saved_statuses(cursor) == ["failed", "scheduled", "scheduled"]


def test_release_stale_attempt_leaves_recent_attempt_alone(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor([_in_flight_row(NOW - timedelta(minutes=5))])
    monkeypatch.setattr(config, "RETRY_PROCESSING_TIMEOUT_MINUTES", 30)
    monkeypatch.setattr(payment_failures, "transaction", scripted_transaction(cursor))

    assert payment_failures.release_stale_attempt("in_1_failure", NOW) is False
    assert cursor.queries_containing("UPDATE failed_payments") == []
