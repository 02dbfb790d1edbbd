import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from matlinks import payment_failures, payments_gateway, promotions
from matlinks.audit import audit_system_event
from matlinks.db import execute, execute_returning_one, fetch_one
from matlinks.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _as_dict(event) -> dict:
    to_dict = getattr(event, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(event)


def _object_id(value):
    if isinstance(value, dict):
        return value.get("id")
    return value


def _profile_for_customer(customer_id: str):
    return fetch_one("SELECT id, profile_id FROM members WHERE stripe_customer_id = %s", (customer_id,))


def handle_checkout_completed(session: dict) -> None:
    metadata = session.get("metadata") or {}
    profile_id = metadata.get("profile_id")
    plan_id = metadata.get("membership_plan_id")
    if not profile_id or not plan_id:
        logger.warning("checkout session %s without profile or plan metadata", session.get("id"))
        return

    params = (
        int(plan_id),
        _object_id(session.get("customer")),
        _object_id(session.get("subscription")),
        int(profile_id),
    )
    updated = execute_returning_one(
        """
        UPDATE members
        SET membership_plan_id = %s,
            stripe_customer_id = %s,
            stripe_subscription_id = %s,
            subscription_status = 'active',
            status = 'ACTIVE',
            updated_at = now()
        WHERE profile_id = %s
        RETURNING id
        """,
        params,
    )
    if not updated:
        execute(
            """
            INSERT INTO members (
                membership_plan_id, stripe_customer_id, stripe_subscription_id,
                subscription_status, status, profile_id
            )
            VALUES (%s, %s, %s, 'active', 'ACTIVE', %s)
            """,
            params,
        )
    execute(
        "UPDATE profiles SET current_plan_id = %s, updated_at = now() WHERE id = %s",
        (int(plan_id), int(profile_id)),
    )

    code = metadata.get("promotion_code")
    if code:
        try:
            result = promotions.apply_promotion(code, int(profile_id), order_ref=session.get("id"))
        except AppError as exc:
            logger.warning("promotion %s not applied for checkout %s: %s", code, session.get("id"), exc.message)
        else:
            if not result.is_valid:
                logger.warning("promotion %s not applied for checkout %s: %s", code, session.get("id"), result.message)


def handle_invoice_paid(invoice: dict) -> None:
    customer_id = _object_id(invoice.get("customer"))
    member = _profile_for_customer(customer_id) if customer_id else None
    paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
    execute(
        """
        INSERT INTO payment_history (
            user_id, stripe_invoice_id, stripe_payment_intent_id, amount, currency, status, description, paid_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (stripe_invoice_id) DO NOTHING
        """,
        (
            member["profile_id"] if member else None,
            invoice["id"],
            _object_id(invoice.get("payment_intent")),
            invoice.get("amount_paid") or 0,
            invoice.get("currency") or "usd",
            invoice.get("status") or "paid",
            invoice.get("description"),
            datetime.fromtimestamp(paid_at, tz=timezone.utc) if paid_at else None,
        ),
    )
    payment_failures.resolve_by_invoice(invoice["id"])


def handle_invoice_failed(invoice: dict) -> None:
    customer_id = _object_id(invoice.get("customer"))
    if not customer_id:
        logger.error("invoice %s failed without a customer", invoice.get("id"))
        return
    error = invoice.get("last_payment_error") or {}
    code = error.get("decline_code") or error.get("code") or error.get("type")
    try:
        payment_failures.record_failed_payment(
            customer_id=customer_id,
            invoice_id=invoice["id"],
            amount=invoice.get("amount_due") or invoice.get("total") or 0,
            currency=invoice.get("currency") or "usd",
            payment_method_id=_object_id(error.get("payment_method")),
            failure_code=code,
            subscription_id=_object_id(invoice.get("subscription")),
        )
    except AppError as exc:
        logger.error("could not record failed invoice %s: %s", invoice["id"], exc.message)


def handle_subscription_changed(subscription: dict, deleted: bool = False) -> None:
    execute(
        """
        UPDATE members
        SET subscription_status = %s, updated_at = now()
        WHERE stripe_customer_id = %s
        """,
        ("canceled" if deleted else subscription.get("status"), _object_id(subscription.get("customer"))),
    )


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_failed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": lambda subscription: handle_subscription_changed(subscription, deleted=True),
}


def dispatch_event(event: dict) -> bool:
    handler = HANDLERS.get(event.get("type"))
    if handler is None:
        logger.debug("ignoring stripe event %s", event.get("type"))
        return False
    handler(event["data"]["object"])
    return True


@router.post("/stripe")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
    payload = await request.body()
    event = _as_dict(payments_gateway.construct_webhook_event(payload, stripe_signature))
    logger.info("stripe event %s id=%s", event.get("type"), event.get("id"))
    handled = await run_in_threadpool(dispatch_event, event)
    if handled:
        await run_in_threadpool(
            audit_system_event,
            "stripe",
            "webhook.stripe",
            resource_type="stripe_event",
            resource_id=event.get("id"),
            details={"type": event.get("type")},
        )
    return {"received": True}
