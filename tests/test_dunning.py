from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg2

from matlinks import config, dunning
from matlinks.dunning import DunningStage
from matlinks.email_service import EmailResult
from matlinks.errors import AppError, ErrorKind
from matlinks.payment_utils import PaymentFailureType
from tests.conftest import ScriptedCursor

NOW = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
USER = {"email": "ana@example.com", "first_name": "Ana", "last_name": "Silva"}


def _notification(stage: DunningStage, **overrides) -> dict:
    data = {
        "id": 5,
        "user_id": 42,
        "payment_id": "in_1_failure",
        "stage": stage.value,
        "failure_type": "insufficient_funds",
        "amount": 4999,
        "currency": "usd",
    }
    data.update(overrides)
    return data


class _Statements:
    def __init__(self):
        self.calls = []

    def __call__(self, query, params=()):
        self.calls.append((" ".join(query.split()), params))

    def matching(self, fragment):
        return [params for query, params in self.calls if fragment in query]


def test_format_currency():
    assert dunning.format_currency(4999, "usd") == "$49.99"
    assert dunning.format_currency(123456, "EUR") == "€1,234.56"
    assert dunning.format_currency(500, "chf") == "5.00 CHF"


def test_initial_email_mentions_amount_reason_and_billing_link():
    content = dunning.prepare_email_content(
        DunningStage.INITIAL_FAILURE, USER, _notification(DunningStage.INITIAL_FAILURE), "https://app.example.com"
    )
    assert content.subject == "Payment Failed: Action Required"
    assert "$49.99" in content.plain_text
    assert "Insufficient funds in your account" in content.plain_text
    assert "https://app.example.com/student/billing" in content.body
    assert "Hello Ana Silva," in content.plain_text


def test_cancellation_email_has_no_billing_link():
    content = dunning.prepare_email_content(
        DunningStage.SUBSCRIPTION_CANCELED, USER, _notification(DunningStage.SUBSCRIPTION_CANCELED), "https://x"
    )
    assert content.subject == "Your Membership Has Been Canceled"
    assert "/student/billing" not in content.body


def test_final_notice_mentions_grace_period(monkeypatch):
    monkeypatch.setattr(config, "DUNNING_CANCELLATION_GRACE_DAYS", 10)
    content = dunning.prepare_email_content(
        DunningStage.FINAL_NOTICE, USER, _notification(DunningStage.FINAL_NOTICE), "https://x"
    )
    assert "within 10 days" in content.plain_text


def test_unknown_failure_type_has_generic_reason():
    assert dunning.failure_reason("unknown") == "Payment processing issue"
    assert dunning.failure_reason(None) == "Payment processing issue"


def test_create_workflow_queues_four_stages_and_sends_first(monkeypatch, scripted_transaction):
    processed = []
    stages = list(dunning.NOTIFICATION_OFFSETS_DAYS)
    cursor = ScriptedCursor([{"id": n, "stage": stage.value} for n, stage in enumerate(stages, 1)])
    monkeypatch.setattr(dunning, "transaction", scripted_transaction(cursor))
    monkeypatch.setattr(dunning, "process_notification", lambda row, now: processed.append(row) or True)

    ok = dunning.create_dunning_workflow(42, "in_1_failure", PaymentFailureType.CARD_DECLINED, 4999, "usd", NOW)

    assert ok is True
    inserted = cursor.queries_containing("INSERT INTO dunning_notifications")
    assert [params[2] for params in inserted] == [
        "initial_failure",
        "first_reminder",
        "second_reminder",
        "final_notice",
    ]
    assert [params[3] for params in inserted] == [NOW + timedelta(days=d) for d in (0, 3, 7, 14)]
    assert [row["stage"] for row in processed] == ["initial_failure"]


class _FailingCursor(ScriptedCursor):
    def __init__(self, fail_on_call):
        super().__init__([{"id": 1, "stage": "initial_failure"}])
        self.fail_on_call = fail_on_call

    def execute(self, query, params=()):
        if len(self.statements) + 1 == self.fail_on_call:
            raise RuntimeError("db down")
        super().execute(query, params)


def test_create_workflow_reports_storage_failure_without_sending(monkeypatch):
    processed = []
    cursor = _FailingCursor(fail_on_call=3)
    rolled_back = []

    @contextmanager
    def _transaction():
        try:
            yield cursor
        except Exception:
            rolled_back.append(True)
            raise

    monkeypatch.setattr(dunning, "transaction", _transaction)
    monkeypatch.setattr(dunning, "process_notification", lambda row, now: processed.append(row) or True)

    assert dunning.create_dunning_workflow(42, "p", PaymentFailureType.UNKNOWN, 100, "usd", NOW) is False
    assert rolled_back == [True]
    assert processed == []


def test_process_notification_marks_sent(monkeypatch):
    statements = _Statements()
    sent = []
    monkeypatch.setattr(dunning, "fetch_one", lambda query, params: USER)
    monkeypatch.setattr(dunning, "execute", statements)
    monkeypatch.setattr(dunning, "send_email", lambda **kwargs: sent.append(kwargs) or EmailResult(success=True))

    assert dunning.process_notification(_notification(DunningStage.FIRST_REMINDER), NOW) is True

    assert sent[0]["to"] == "ana@example.com"
    assert sent[0]["subject"] == "Payment Reminder: Update Your Payment Method"
    assert statements.matching("UPDATE dunning_notifications") == [("sent", NOW, NOW, 5)]


def test_process_notification_marks_failed_when_email_fails(monkeypatch):
    statements = _Statements()
    monkeypatch.setattr(dunning, "fetch_one", lambda query, params: USER)
    monkeypatch.setattr(dunning, "execute", statements)
    monkeypatch.setattr(dunning, "send_email", lambda **kwargs: EmailResult(success=False, error="smtp"))

    assert dunning.process_notification(_notification(DunningStage.FIRST_REMINDER), NOW) is False
    assert statements.matching("UPDATE dunning_notifications") == [("failed", None, NOW, 5)]


def test_process_notification_marks_failed_for_missing_profile(monkeypatch):
    statements = _Statements()
    monkeypatch.setattr(dunning, "fetch_one", lambda query, params: None)
    monkeypatch.setattr(dunning, "execute", statements)

    assert dunning.process_notification(_notification(DunningStage.INITIAL_FAILURE), NOW) is False
    assert statements.matching("UPDATE dunning_notifications")[0][0] == "failed"


def test_final_notice_schedules_cancellation(monkeypatch):
    statements = _Statements()

    def _fetch_one(query, params):
        if "failed_payments" in query:
            return {"subscription_id": "sub_9"}
        return USER

    monkeypatch.setattr(dunning, "fetch_one", _fetch_one)
    monkeypatch.setattr(dunning, "execute", statements)
    monkeypatch.setattr(dunning, "send_email", lambda **kwargs: EmailResult(success=True))
    monkeypatch.setattr(config, "DUNNING_CANCELLATION_GRACE_DAYS", 7)

    assert dunning.process_notification(_notification(DunningStage.FINAL_NOTICE), NOW) is True

    pending = statements.matching("INSERT INTO pending_subscription_cancellations")
    assert pending == [(42, "sub_9", NOW + timedelta(days=7), "in_1_failure", NOW)]
    cancel_notice = statements.matching("INSERT INTO dunning_notifications")
    assert cancel_notice[0][2] == "subscription_canceled"


def test_process_pending_notifications_counts(monkeypatch):
    rows = [_notification(DunningStage.INITIAL_FAILURE, id=1), _notification(DunningStage.FIRST_REMINDER, id=2)]
    monkeypatch.setattr(dunning, "fetch_all", lambda query, params: rows)
    monkeypatch.setattr(dunning, "process_notification", lambda row, now: row["id"] == 1)

    assert dunning.process_pending_notifications(NOW) == {"processed": 1, "failed": 1}


def test_void_dunning_cancels_pending_rows(monkeypatch):
    statements = _Statements()
    monkeypatch.setattr(dunning, "execute", statements)

    dunning.void_dunning_for_payment("in_1_failure", NOW)

    assert statements.matching("SET status = 'cancelled'") == [(NOW, "in_1_failure")]
    assert statements.matching("SET voided = TRUE") == [(NOW, "in_1_failure")]


def _cancellation_rows():
    return [
        {"id": 1, "user_id": 42, "subscription_id": "sub_ok", "payment_id": "p1"},
        {"id": 2, "user_id": 43, "subscription_id": "sub_err", "payment_id": "p2"},
        {"id": 3, "user_id": 44, "subscription_id": None, "payment_id": "p3"},
    ]


def test_process_pending_cancellations(monkeypatch, scripted_transaction):
    cursor = ScriptedCursor()
    cancelled = []

    def _cancel(subscription_id, reason):
        if subscription_id == "sub_err":
            raise AppError(ErrorKind.GATEWAY, "Failed to cancel subscription")
        cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    monkeypatch.setattr(dunning, "fetch_all", lambda query, params: _cancellation_rows())
    monkeypatch.setattr(dunning, "fetch_one", lambda query, params: None)
    monkeypatch.setattr(dunning, "transaction", scripted_transaction(cursor))
    monkeypatch.setattr(dunning.payments_gateway, "cancel_subscription", _cancel)

    assert dunning.process_pending_cancellations(NOW) == {"processed": 1}
    assert cancelled == ["sub_ok"]
    assert cursor.queries_containing("SET subscription_status = 'canceled'") == [(NOW, 42)]
    assert cursor.queries_containing("SET processed = TRUE") == [(NOW, NOW, 1)]
    assert cursor.queries_containing("INSERT INTO subscription_cancellations")[0][:3] == (42, "sub_ok", "payment_failure")


class _DisconnectedCursor(ScriptedCursor):
    def execute(self, query, params=()):
        raise psycopg2.OperationalError("server closed the connection")


def test_process_pending_cancellations_continues_after_database_error(monkeypatch):
    rows = [
        {"id": 1, "user_id": 42, "subscription_id": "sub_1", "payment_id": "p1"},
        {"id": 2, "user_id": 43, "subscription_id": "sub_2", "payment_id": "p2"},
    ]
    cursors = [_DisconnectedCursor(), ScriptedCursor()]
    opened = []
    cancelled = []

    @contextmanager
    def _transaction():
        cursor = cursors[len(opened)]
        opened.append(cursor)
        yield cursor

    monkeypatch.setattr(dunning, "fetch_all", lambda query, params: rows)
    monkeypatch.setattr(dunning, "transaction", _transaction)
    monkeypatch.setattr(
        dunning.payments_gateway,
        "cancel_subscription",
        lambda subscription_id, reason: cancelled.append(subscription_id) or {"id": subscription_id},
    )

    assert dunning.process_pending_cancellations(NOW) == {"processed": 1}
    assert cancelled == ["sub_1", "sub_2"]
    assert cursors[1].queries_containing("SET processed = TRUE") == [(NOW, NOW, 2)]
