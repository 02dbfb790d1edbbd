"""Thin wrapper over the Stripe SDK for the calls the billing code makes."""

import logging
from typing import Optional

import stripe
from pydantic import BaseModel

from matlinks import config
from matlinks.errors import AppError, ErrorKind

logger = logging.getLogger(__name__)

_RETRYABLE_INVOICE_STATUSES = {"open", "uncollectible"}


class RetryOutcome(BaseModel):
    success: bool
    message: str
    payment_intent_id: Optional[str] = None


def _client_ready() -> None:
    if not config.STRIPE_SECRET_KEY:
        raise AppError(ErrorKind.GATEWAY, "Payment processor is not configured")
    stripe.api_key = config.STRIPE_SECRET_KEY


def _intent_id(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


def retry_invoice(invoice_id: Optional[str]) -> RetryOutcome:
    """Attempt to collect an open invoice again. Gateway failures come back as an unsuccessful outcome."""
    if not invoice_id:
        return RetryOutcome(success=False, message="Non-subscription payment retry is not supported")
    try:
        _client_ready()
        invoice = stripe.Invoice.retrieve(invoice_id)
        if invoice.status not in _RETRYABLE_INVOICE_STATUSES:
            return RetryOutcome(success=False, message=f"Invoice status {invoice.status} cannot be retried")
        paid = stripe.Invoice.pay(invoice_id)
    except stripe.error.StripeError as exc:
        code = getattr(exc, "code", None) or "processing_error"
        logger.warning("invoice retry failed invoice=%s code=%s", invoice_id, code)
        return RetryOutcome(success=False, message=code)
    except AppError as exc:
        return RetryOutcome(success=False, message=exc.message)

    if paid.status == "paid":
        return RetryOutcome(
            success=True,
            message="Payment retry succeeded",
            payment_intent_id=_intent_id(getattr(paid, "payment_intent", None)),
        )
    return RetryOutcome(success=False, message=f"Payment retry failed: {paid.status}")


def cancel_subscription(subscription_id: str, reason: str, at_period_end: bool = False) -> dict:
    _client_ready()
    try:
        if at_period_end:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                metadata={"cancellation_reason": reason},
            )
        else:
            subscription = stripe.Subscription.retrieve(subscription_id)
            if subscription.status != "canceled":
                subscription = stripe.Subscription.cancel(subscription_id)
    except stripe.error.StripeError as exc:
        logger.error("subscription cancel failed subscription=%s: %s", subscription_id, exc)
        raise AppError(ErrorKind.GATEWAY, "Failed to cancel subscription") from exc
    logger.info("subscription cancelled subscription=%s at_period_end=%s", subscription_id, at_period_end)
    return {
        "id": subscription.id,
        "status": subscription.status,
        "cancel_at_period_end": bool(getattr(subscription, "cancel_at_period_end", False)),
        "current_period_end": getattr(subscription, "current_period_end", None),
    }


def change_subscription_price(subscription_id: str, new_price_id: str) -> dict:
    _client_ready()
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
        items = subscription["items"]["data"]
        if not items:
            raise AppError(ErrorKind.VALIDATION, "Subscription has no items to change")
        updated = stripe.Subscription.modify(
            subscription_id,
            items=[{"id": items[0]["id"], "price": new_price_id}],
            proration_behavior="create_prorations",
        )
    except stripe.error.StripeError as exc:
        logger.error("plan change failed subscription=%s: %s", subscription_id, exc)
        raise AppError(ErrorKind.GATEWAY, "Failed to change subscription plan") from exc
    return {"id": updated.id, "status": updated.status}


def create_checkout_session(
    *,
    price_id: Optional[str],
    customer_email: str,
    customer_id: Optional[str],
    metadata: dict[str, str],
    unit_amount: Optional[int] = None,
    product_name: Optional[str] = None,
    interval: str = "month",
    currency: str = "usd",
) -> dict:
    """
    Start a subscription checkout.

    With ``unit_amount`` the plan is charged at that amount through inline
    price data (used for promotion discounts) instead of its stored price.
    """
    _client_ready()
    if unit_amount is None:
        line_item = {"price": price_id, "quantity": 1}
    else:
        line_item = {
            "price_data": {
                "currency": currency,
                "product_data": {"name": product_name or "Membership"},
                "unit_amount": unit_amount,
                "recurring": {"interval": interval, "interval_count": 1},
            },
            "quantity": 1,
        }
    params = {
        "mode": "subscription",
        "line_items": [line_item],
        "success_url": f"{config.APP_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.APP_URL}/checkout/cancel",
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = customer_email
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.error.StripeError as exc:
        logger.error("checkout session failed price=%s amount=%s: %s", price_id, unit_amount, exc)
        raise AppError(ErrorKind.GATEWAY, "Failed to start checkout") from exc
    return {"id": session.id, "url": session.url}


def construct_webhook_event(payload: bytes, signature: Optional[str]):
    if not config.STRIPE_WEBHOOK_SECRET:
        raise AppError(ErrorKind.GATEWAY, "Webhook secret is not configured")
    try:
        return stripe.Webhook.construct_event(payload, signature or "", config.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.error.SignatureVerificationError) as exc:
        raise AppError(ErrorKind.UNAUTHENTICATED, "Invalid webhook signature") from exc
