from matlinks.errors import AppError, ErrorKind
from matlinks.promotions import PromotionCheck
from matlinks.routes import webhooks


class _Statements:
    def __init__(self, returning=None):
        self.calls = []
        self.returning = returning

    def execute(self, query, params=()):
        self.calls.append((" ".join(query.split()), params))

    def execute_returning_one(self, query, params=()):
        self.calls.append((" ".join(query.split()), params))
        return self.returning

    def matching(self, fragment):
        return [params for query, params in self.calls if fragment in query]


def test_dispatch_ignores_unknown_events():
    assert webhooks.dispatch_event({"type": "charge.refunded", "data": {"object": {}}}) is False


def test_invoice_failed_records_failure(monkeypatch):
    recorded = []
    monkeypatch.setattr(webhooks.payment_failures, "record_failed_payment", lambda **kwargs: recorded.append(kwargs))
    event = {
        "type": "invoice.payment_failed",
        "data": {
            "object": {
                "id": "in_1",
                "customer": "cus_1",
                "amount_due": 4999,
                "currency": "eur",
                "subscription": "sub_1",
                "last_payment_error": {"decline_code": "insufficient_funds", "payment_method": {"id": "pm_1"}},
            }
        },
    }

    assert webhooks.dispatch_event(event) is True
    assert recorded == [
        {
            "customer_id": "cus_1",
            "invoice_id": "in_1",
            "amount": 4999,
            "currency": "eur",
            "payment_method_id": "pm_1",
            "failure_code": "insufficient_funds",
            "subscription_id": "sub_1",
        }
    ]


def test_invoice_failed_for_unknown_customer_is_swallowed(monkeypatch):
    def _record(**kwargs):
        raise AppError(ErrorKind.NOT_FOUND, "No member for customer cus_x")

    monkeypatch.setattr(webhooks.payment_failures, "record_failed_payment", _record)
    webhooks.handle_invoice_failed({"id": "in_9", "customer": "cus_x"})


def test_invoice_paid_records_history_and_resolves(monkeypatch):
    statements = _Statements()
    resolved = []
    monkeypatch.setattr(webhooks, "execute", statements.execute)
    monkeypatch.setattr(webhooks, "fetch_one", lambda query, params: {"id": 9, "profile_id": 42})
    monkeypatch.setattr(webhooks.payment_failures, "resolve_by_invoice", lambda invoice_id: resolved.append(invoice_id))

    webhooks.handle_invoice_paid(
        {"id": "in_1", "customer": "cus_1", "amount_paid": 4999, "currency": "usd", "status": "paid"}
    )

    history = statements.matching("INSERT INTO payment_history")
    assert history[0][:5] == (42, "in_1", None, 4999, "usd")
    assert resolved == ["in_1"]


def test_checkout_completed_creates_member_and_redeems_code(monkeypatch):
    statements = _Statements(returning=None)
    applied = []
    monkeypatch.setattr(webhooks, "execute", statements.execute)
    monkeypatch.setattr(webhooks, "execute_returning_one", statements.execute_returning_one)
    monkeypatch.setattr(
        webhooks.promotions,
        "apply_promotion",
        lambda code, user_id, order_ref=None: applied.append((code, user_id, order_ref))
        or PromotionCheck(is_valid=True, message="Promotion applied successfully"),
    )

    webhooks.handle_checkout_completed(
        {
            "id": "cs_1",
            "customer": "cus_1",
            "subscription": "sub_1",
            "metadata": {"profile_id": "42", "membership_plan_id": "3", "promotion_code": "SUMMER"},
        }
    )

    assert statements.matching("INSERT INTO members") == [(3, "cus_1", "sub_1", 42)]
    assert statements.matching("UPDATE profiles SET current_plan_id") == [(3, 42)]
    assert applied == [("SUMMER", 42, "cs_1")]


def test_checkout_without_metadata_does_nothing(monkeypatch):
    statements = _Statements()
    monkeypatch.setattr(webhooks, "execute", statements.execute)
    webhooks.handle_checkout_completed({"id": "cs_2", "metadata": {}})
    assert statements.calls == []


def test_subscription_deleted_marks_canceled(monkeypatch):
    statements = _Statements()
    monkeypatch.setattr(webhooks, "execute", statements.execute)

    webhooks.dispatch_event(
        {"type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_1", "status": "canceled"}}}
    )

    assert statements.matching("UPDATE members") == [("canceled", "cus_1")]
