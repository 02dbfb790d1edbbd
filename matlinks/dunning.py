"""
Dunning: the reminder emails that follow a failed payment and the
cancellation that closes the sequence when nobody pays.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from html import escape
from typing import Optional

from pydantic import BaseModel

from matlinks import config, payments_gateway
from matlinks.date_utils import utcnow
from matlinks.db import execute, fetch_all, fetch_one, transaction
from matlinks.email_service import send_email
from matlinks.errors import AppError
from matlinks.payment_utils import PaymentFailureType

logger = logging.getLogger(__name__)


class DunningStage(str, Enum):
    INITIAL_FAILURE = "initial_failure"
    FIRST_REMINDER = "first_reminder"
    SECOND_REMINDER = "second_reminder"
    FINAL_NOTICE = "final_notice"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


NOTIFICATION_OFFSETS_DAYS = {
    DunningStage.INITIAL_FAILURE: 0,
    DunningStage.FIRST_REMINDER: 3,
    DunningStage.SECOND_REMINDER: 7,
    DunningStage.FINAL_NOTICE: 14,
}

_FAILURE_REASONS = {
    PaymentFailureType.INSUFFICIENT_FUNDS.value: "Insufficient funds in your account",
    PaymentFailureType.CARD_DECLINED.value: "Your card was declined",
    PaymentFailureType.EXPIRED_CARD.value: "Your card has expired",
    PaymentFailureType.INVALID_CVC.value: "Invalid security code (CVC)",
    PaymentFailureType.PROCESSING_ERROR.value: "A processing error occurred",
}

_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "AUD": "A$", "CAD": "C$"}

_NOTIFICATION_COLUMNS = (
    "id, user_id, payment_id, stage, scheduled_date, sent_date, status, failure_type, amount, currency"
)


class EmailContent(BaseModel):
    subject: str
    body: str
    plain_text: str


def failure_reason(failure_type: Optional[str]) -> str:
    return _FAILURE_REASONS.get(failure_type or "", "Payment processing issue")


def format_currency(amount_minor: Optional[int], currency: Optional[str]) -> str:
    code = (currency or "usd").upper()
    value = f"{(amount_minor or 0) / 100:,.2f}"
    symbol = _CURRENCY_SYMBOLS.get(code)
    return f"{symbol}{value}" if symbol else f"{value} {code}"


def _stage_copy(stage: DunningStage, amount: str, reason: str) -> tuple[str, str, list[str], bool]:
    """(subject, heading, paragraphs, include billing link) for a stage."""
    if stage == DunningStage.INITIAL_FAILURE:
        return (
            "Payment Failed: Action Required",
            "Payment Failed",
            [
                f"We were unable to process your payment of {amount} for your membership.",
                f"Reason: {reason}",
                "Please update your payment method in your account settings to prevent any interruption to your membership.",
            ],
            True,
        )
    if stage == DunningStage.FIRST_REMINDER:
        return (
            "Payment Reminder: Update Your Payment Method",
            "Payment Reminder",
            [
                f"This is a reminder that we were unable to process your payment of {amount} for your membership.",
                "Please update your payment method as soon as possible to maintain uninterrupted access to classes.",
            ],
            True,
        )
    if stage == DunningStage.SECOND_REMINDER:
        return (
            "Urgent: Payment Update Required",
            "Urgent Payment Reminder",
            [
                f"We still have not been able to process your payment of {amount} for your membership.",
                "Your membership benefits may be affected if the payment issue is not resolved soon.",
                "Please update your payment method immediately to avoid any interruptions.",
            ],
            True,
        )
    if stage == DunningStage.FINAL_NOTICE:
        return (
            "Final Notice: Membership At Risk",
            "Final Payment Notice",
            [
                f"This is a final notice regarding your failed payment of {amount}.",
                f"If your payment method is not updated within {config.DUNNING_CANCELLATION_GRACE_DAYS} days, "
                "your membership will be automatically canceled.",
                "To maintain your membership and access to classes, please update your payment information immediately.",
            ],
            True,
        )
    return (
        "Your Membership Has Been Canceled",
        "Membership Canceled",
        [
            "Due to continued payment failures, your membership has been canceled.",
            "If you would like to reinstate your membership, please contact our staff or visit the gym.",
            "We value you as a member and hope to see you back soon.",
        ],
        False,
    )


def prepare_email_content(stage: DunningStage, user: dict, notification: dict, app_url: str) -> EmailContent:
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip() or "there"
    amount = format_currency(notification.get("amount"), notification.get("currency"))
    subject, heading, paragraphs, with_link = _stage_copy(
        DunningStage(stage), amount, failure_reason(notification.get("failure_type"))
    )
    billing_url = f"{app_url}/student/billing"

    html_parts = [f"<h2>{escape(heading)}</h2>", f"<p>Hello {escape(name)},</p>"]
    html_parts += [f"<p>{escape(paragraph)}</p>" for paragraph in paragraphs]
    text_parts = [heading, f"Hello {name},", *paragraphs]
    if with_link:
        html_parts.append(f'<p><a href="{escape(billing_url)}">Update Payment Method</a></p>')
        text_parts.append(billing_url)
    return EmailContent(subject=subject, body="\n".join(html_parts), plain_text="\n".join(text_parts))


def _update_notification_status(notification_id: int, status: str, now: datetime) -> None:
    execute(
        """
        UPDATE dunning_notifications
        SET status = %s,
            sent_date = %s,
            updated_at = %s
        WHERE id = %s
        """,
        (status, now if status == "sent" else None, now, notification_id),
    )


def create_dunning_workflow(
    user_id: int,
    payment_id: str,
    failure_type: PaymentFailureType,
    amount: int,
    currency: str,
    now: Optional[datetime] = None,
) -> bool:
    """Queue the reminder sequence for a failed payment and send the first email right away."""
    now = now or utcnow()
    first = None
    try:
        with transaction() as cur:
            for stage, offset in NOTIFICATION_OFFSETS_DAYS.items():
                cur.execute(
                    f"""
                    INSERT INTO dunning_notifications (
                        user_id, payment_id, stage, scheduled_date, status,
                        failure_type, amount, currency, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s)
                    RETURNING {_NOTIFICATION_COLUMNS}
                    """,
                    (
                        user_id,
                        payment_id,
                        stage.value,
                        now + timedelta(days=offset),
                        PaymentFailureType(failure_type).value,
                        amount,
                        currency,
                        now,
                        now,
                    ),
                )
                row = cur.fetchone()
                if first is None:
                    first = row
    except Exception:
        logger.exception("could not create dunning workflow payment=%s", payment_id)
        return False

    if first:
        process_notification(first, now)
    logger.info("dunning workflow created payment=%s user=%s", payment_id, user_id)
    return True


def process_pending_notifications(now: Optional[datetime] = None) -> dict[str, int]:
    now = now or utcnow()
    rows = fetch_all(
        f"""
        SELECT {_NOTIFICATION_COLUMNS}
        FROM dunning_notifications
        WHERE status = 'pending' AND scheduled_date <= %s
        ORDER BY scheduled_date, id
        """,
        (now,),
    )
    processed = 0
    failed = 0
    for notification in rows:
        if process_notification(notification, now):
            processed += 1
        else:
            failed += 1
    return {"processed": processed, "failed": failed}


def process_notification(notification: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    notification_id = notification["id"]
    try:
        user = fetch_one(
            "SELECT email, first_name, last_name FROM profiles WHERE id = %s",
            (notification["user_id"],),
        )
        if not user or not user.get("email"):
            logger.error("dunning notification %s: profile %s not found", notification_id, notification["user_id"])
            _update_notification_status(notification_id, "failed", now)
            return False

        content = prepare_email_content(notification["stage"], user, notification, config.APP_URL)
        result = send_email(to=user["email"], subject=content.subject, html=content.body, text=content.plain_text)
        if not result.success:
            logger.error("dunning notification %s: email failed: %s", notification_id, result.error)
            _update_notification_status(notification_id, "failed", now)
            return False

        _update_notification_status(notification_id, "sent", now)
        if notification["stage"] == DunningStage.FINAL_NOTICE.value:
            schedule_subscription_cancellation(notification["user_id"], notification["payment_id"], now)
        return True
    except Exception:
        logger.exception("dunning notification %s failed", notification_id)
        _update_notification_status(notification_id, "failed", now)
        return False


def schedule_subscription_cancellation(user_id: int, payment_id: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    payment = fetch_one("SELECT subscription_id FROM failed_payments WHERE id = %s", (payment_id,))
    subscription_id = payment.get("subscription_id") if payment else None
    if not subscription_id:
        logger.error("no subscription found for failed payment %s", payment_id)
        return False

    cancellation_date = now + timedelta(days=config.DUNNING_CANCELLATION_GRACE_DAYS)
    execute(
        """
        INSERT INTO dunning_notifications (
            user_id, payment_id, stage, scheduled_date, status,
            failure_type, amount, currency, created_at, updated_at
        )
        VALUES (%s, %s, %s, %s, 'pending', 'subscription_cancellation', 0, 'usd', %s, %s)
        """,
        (user_id, payment_id, DunningStage.SUBSCRIPTION_CANCELED.value, cancellation_date, now, now),
    )
    execute(
        """
        INSERT INTO pending_subscription_cancellations (
            user_id, subscription_id, scheduled_date, payment_id, created_at
        )
        VALUES (%s, %s, %s, %s, %s)
        """,
        (user_id, subscription_id, cancellation_date, payment_id, now),
    )
    return True


def void_dunning_for_payment(payment_id: str, now: Optional[datetime] = None) -> None:
    """Stop the sequence for a payment that has been recovered."""
    now = now or utcnow()
    execute(
        """
        UPDATE dunning_notifications
        SET status = 'cancelled', updated_at = %s
        WHERE payment_id = %s AND status = 'pending'
        """,
        (now, payment_id),
    )
    execute(
        """
        UPDATE pending_subscription_cancellations
        SET voided = TRUE, updated_at = %s
        WHERE payment_id = %s AND processed = FALSE
        """,
        (now, payment_id),
    )


def _cancel_one(cancellation: dict, now: datetime) -> bool:
    subscription_id = cancellation.get("subscription_id")
    if not subscription_id:
        member = fetch_one(
            "SELECT stripe_subscription_id FROM members WHERE profile_id = %s",
            (cancellation["user_id"],),
        )
        subscription_id = member.get("stripe_subscription_id") if member else None
    if not subscription_id:
        logger.error("no subscription id for pending cancellation %s", cancellation["id"])
        return False

    try:
        payments_gateway.cancel_subscription(subscription_id, "Canceled due to payment failure")
    except AppError as exc:
        logger.error("pending cancellation %s failed: %s", cancellation["id"], exc.message)
        return False

    with transaction() as cur:
        cur.execute(
            """
            UPDATE members
            SET subscription_status = 'canceled', updated_at = %s
            WHERE profile_id = %s
            """,
            (now, cancellation["user_id"]),
        )
        cur.execute(
            """
            UPDATE pending_subscription_cancellations
            SET processed = TRUE, processed_date = %s, updated_at = %s
            WHERE id = %s
            """,
            (now, now, cancellation["id"]),
        )
        cur.execute(
            """
            INSERT INTO subscription_cancellations (
                user_id, subscription_id, reason, canceled_at, effective_date, immediate
            )
            VALUES (%s, %s, %s, %s, %s, TRUE)
            """,
            (cancellation["user_id"], subscription_id, "payment_failure", now, now),
        )
    return True


def process_pending_cancellations(now: Optional[datetime] = None) -> dict[str, int]:
    now = now or utcnow()
    rows = fetch_all(
        """
        SELECT id, user_id, subscription_id, payment_id
        FROM pending_subscription_cancellations
        WHERE processed = FALSE AND voided = FALSE AND scheduled_date <= %s
        ORDER BY scheduled_date, id
        """,
        (now,),
    )
    processed = 0
    for cancellation in rows:
        # a row left unprocessed here is picked up again on the next run
        try:
            if _cancel_one(cancellation, now):
                processed += 1
        except Exception:
            logger.exception("pending cancellation %s failed", cancellation["id"])
    return {"processed": processed}
