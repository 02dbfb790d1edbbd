from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query

from matlinks import payment_failures, payments_gateway, promotions
from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_user
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import AppError, ErrorKind, ValidationError, not_found
from matlinks.payment_failures import RetryResult
from matlinks.schemas import CancelSubscriptionIn, ChangePlanIn, CheckoutIn

router = APIRouter(prefix="/finance", tags=["finance"])


def _member_subscription(member_id: int) -> dict:
    member = fetch_one(
        "SELECT id, profile_id, stripe_subscription_id, subscription_status FROM members WHERE id = %s",
        (member_id,),
    )
    if not member:
        raise not_found("Member")
    if not member.get("stripe_subscription_id"):
        raise AppError(ErrorKind.NOT_FOUND, "Member has no subscription")
    return member


@router.get("/failed-payments")
def failed_payments(
    status_filter: Literal["open", "resolved", "all"] = Query(default="open", alias="status"),
    _: dict = Depends(require_manager),
):
    return payment_failures.list_failed_payments(status_filter)


@router.post("/failed-payments/{payment_id}/retry", response_model=RetryResult)
def retry_payment(payment_id: str, user: dict = Depends(require_manager)):
    result = payment_failures.retry_failed_payment_now(payment_id)
    audit_user_action(
        user,
        "payment.retry",
        "failed_payment",
        payment_id,
        {"success": result.success, "message": result.message},
    )
    return result


@router.get("/payments")
def payment_history(
    profile_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _: dict = Depends(require_manager),
):
    return fetch_all(
        """
        SELECT id, user_id, stripe_invoice_id, amount, currency, status, description, paid_at
        FROM payment_history
        WHERE (%s::int IS NULL OR user_id = %s)
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (profile_id, profile_id, limit),
    )


@router.post("/subscriptions/{member_id}/cancel")
def cancel_subscription(member_id: int, payload: CancelSubscriptionIn, user: dict = Depends(require_manager)):
    member = _member_subscription(member_id)
    result = payments_gateway.cancel_subscription(
        member["stripe_subscription_id"], payload.reason, at_period_end=payload.at_period_end
    )
    execute_returning_one(
        """
        INSERT INTO subscription_cancellations (
            user_id, subscription_id, reason, canceled_at, effective_date, immediate
        )
        VALUES (%s, %s, %s, now(), CASE WHEN %s THEN NULL ELSE now() END, %s)
        RETURNING id
        """,
        (
            member["profile_id"],
            member["stripe_subscription_id"],
            payload.reason,
            payload.at_period_end,
            not payload.at_period_end,
        ),
    )
    if not payload.at_period_end:
        execute_returning_one(
            "UPDATE members SET subscription_status='canceled', updated_at=now() WHERE id=%s RETURNING id",
            (member_id,),
        )
    audit_user_action(user, "subscription.cancel", "member", member_id, {"at_period_end": payload.at_period_end})
    return result


@router.post("/subscriptions/{member_id}/change-plan")
def change_plan(member_id: int, payload: ChangePlanIn, user: dict = Depends(require_manager)):
    member = _member_subscription(member_id)
    plan = fetch_one(
        "SELECT id, stripe_price_id, is_active FROM membership_plans WHERE id = %s",
        (payload.membership_plan_id,),
    )
    if not plan or not plan["is_active"]:
        raise not_found("Membership plan")
    if not plan.get("stripe_price_id"):
        raise ValidationError("Membership plan is not linked to a price")
    result = payments_gateway.change_subscription_price(member["stripe_subscription_id"], plan["stripe_price_id"])
    execute_returning_one(
        "UPDATE members SET membership_plan_id=%s, updated_at=now() WHERE id=%s RETURNING id",
        (plan["id"], member_id),
    )
    execute_returning_one(
        "UPDATE profiles SET current_plan_id=%s, updated_at=now() WHERE id=%s RETURNING id",
        (plan["id"], member["profile_id"]),
    )
    audit_user_action(user, "subscription.change_plan", "member", member_id, {"plan_id": plan["id"]})
    return result


@router.post("/checkout")
def checkout(payload: CheckoutIn, user: dict = Depends(require_user)):
    plan = fetch_one(
        "SELECT id, name, price, billing_interval, stripe_price_id, is_active FROM membership_plans WHERE id = %s",
        (payload.membership_plan_id,),
    )
    if not plan or not plan["is_active"]:
        raise not_found("Membership plan")
    if not plan.get("stripe_price_id"):
        raise ValidationError("Membership plan is not available for online checkout")

    metadata = {"profile_id": str(user["id"]), "membership_plan_id": str(plan["id"])}
    unit_amount = None
    if payload.promotion_code:
        check = promotions.validate_promotion(payload.promotion_code, user["id"])
        if not check.is_valid:
            raise ValidationError(check.message)
        original = int(Decimal(str(plan["price"])) * 100)
        unit_amount = promotions.apply_discount(original, check.discount_type, check.discount_value)
        metadata.update(
            {
                "promotion_code": promotions.normalize_code(payload.promotion_code),
                "original_price": str(original),
                "discounted_price": str(unit_amount),
            }
        )

    member = fetch_one("SELECT stripe_customer_id FROM members WHERE profile_id = %s", (user["id"],))
    session = payments_gateway.create_checkout_session(
        price_id=plan["stripe_price_id"],
        customer_email=user["email"],
        customer_id=member.get("stripe_customer_id") if member else None,
        metadata=metadata,
        unit_amount=unit_amount,
        product_name=plan["name"],
        interval=plan.get("billing_interval") or "month",
    )
    audit_user_action(
        user,
        "checkout.start",
        "membership_plan",
        plan["id"],
        {"session_id": session["id"], "discounted_price": unit_amount},
    )
    return session
