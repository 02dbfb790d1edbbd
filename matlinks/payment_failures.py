"""Stored failed payments and the processor that works through their retry schedule."""

import logging
from datetime import datetime, timedelta
from typing import Literal, Optional

from psycopg2.extras import Json
from pydantic import BaseModel

from matlinks import config, dunning, payments_gateway
from matlinks.date_utils import utcnow
from matlinks.db import execute, execute_returning_one, fetch_all, fetch_one, transaction
from matlinks.errors import AppError, ErrorKind, not_found
from matlinks.payment_utils import (
    FAILURE_TYPE_MESSAGES,
    FailedPayment,
    PaymentInfo,
    RetryAttempt,
    RetryStatus,
    advance_attempt_status,
    build_failed_payment_record,
    cancel_remaining_attempts,
    failure_type_from_code,
    format_retry_attempt,
    has_exhausted_retries,
    next_pending_attempt,
    processing_attempt,
)

logger = logging.getLogger(__name__)

StatusFilter = Literal["open", "resolved", "all"]

_COLUMNS = """
    id, user_id, amount, currency, failure_date, failure_type, failure_message,
    payment_method, retry_attempts, subscription_id, invoice_id, max_retries, resolved_at
"""


class RetryResult(BaseModel):
    success: bool
    message: str
    payment_intent_id: Optional[str] = None


def record_from_row(row: dict) -> FailedPayment:
    return FailedPayment(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        currency=row["currency"],
        failure_date=row["failure_date"],
        failure_type=row["failure_type"],
        failure_message=row["failure_message"],
        payment_method=row["payment_method"],
        retry_attempts=tuple(RetryAttempt.model_validate(item) for item in row.get("retry_attempts") or []),
        subscription_id=row.get("subscription_id"),
        invoice_id=row.get("invoice_id"),
        max_retries=row["max_retries"],
    )


def _attempts_json(record: FailedPayment) -> Json:
    return Json([attempt.model_dump(mode="json") for attempt in record.retry_attempts])


def save_attempts(record: FailedPayment, now: datetime, resolved: bool = False) -> None:
    execute(
        """
        UPDATE failed_payments
        SET retry_attempts = %s,
            resolved_at = CASE WHEN %s THEN %s ELSE resolved_at END,
            updated_at = %s
        WHERE id = %s
        """,
        (_attempts_json(record), resolved, now, now, record.id),
    )


def get_failed_payment(payment_id: str) -> tuple[FailedPayment, Optional[datetime]]:
    row = fetch_one(f"SELECT {_COLUMNS} FROM failed_payments WHERE id = %s", (payment_id,))
    if not row:
        raise not_found("Failed payment")
    return record_from_row(row), row.get("resolved_at")


def record_failed_payment(
    customer_id: str,
    invoice_id: str,
    amount: int,
    currency: str,
    payment_method_id: Optional[str],
    failure_code: Optional[str],
    subscription_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FailedPayment:
    """
    Store a new failed payment with its retry schedule and start dunning.

    A repeated webhook for the same invoice returns the stored record and
    does not start a second dunning sequence.
    """
    now = now or utcnow()
    member = fetch_one(
        "SELECT id, profile_id FROM members WHERE stripe_customer_id = %s",
        (customer_id,),
    )
    if not member:
        raise AppError(ErrorKind.NOT_FOUND, f"No member for customer {customer_id}")

    failure_type = failure_type_from_code(failure_code)
    record = build_failed_payment_record(
        PaymentInfo(
            id=f"{invoice_id}_failure",
            user_id=member["profile_id"],
            amount=amount,
            currency=currency,
            payment_method=payment_method_id or "unknown",
            subscription_id=subscription_id,
            invoice_id=invoice_id,
        ),
        failure_type,
        FAILURE_TYPE_MESSAGES[failure_type],
        schedule=config.DUNNING_RETRY_SCHEDULE,
        failure_date=now,
    )
    inserted = execute_returning_one(
        """
        INSERT INTO failed_payments (
            id, user_id, amount, currency, failure_date, failure_type, failure_message,
            payment_method, retry_attempts, subscription_id, invoice_id, max_retries,
            created_at, updated_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """,
        (
            record.id,
            record.user_id,
            record.amount,
            record.currency,
            record.failure_date,
            record.failure_type.value,
            record.failure_message,
            record.payment_method,
            _attempts_json(record),
            record.subscription_id,
            record.invoice_id,
            record.max_retries,
            now,
            now,
        ),
    )
    if not inserted:
        logger.info("failed payment %s already recorded", record.id)
        stored, _ = get_failed_payment(record.id)
        return stored

    execute(
        "UPDATE members SET subscription_status = 'past_due', updated_at = %s WHERE id = %s",
        (now, member["id"]),
    )
    dunning.create_dunning_workflow(record.user_id, record.id, failure_type, amount, currency, now)
    logger.info(
        "failed payment recorded id=%s user=%s type=%s attempts=%s",
        record.id,
        record.user_id,
        failure_type.value,
        len(record.retry_attempts),
    )
    return record


def mark_resolved(record: FailedPayment, now: datetime) -> None:
    save_attempts(record, now, resolved=True)
    dunning.void_dunning_for_payment(record.id, now)
    execute(
        "UPDATE members SET subscription_status = 'active', updated_at = %s WHERE profile_id = %s",
        (now, record.user_id),
    )


def resolve_by_invoice(invoice_id: str, now: Optional[datetime] = None) -> bool:
    """Close out a failed payment whose invoice got paid outside the retry schedule."""
    now = now or utcnow()
    row = fetch_one(
        f"SELECT {_COLUMNS} FROM failed_payments WHERE id = %s AND resolved_at IS NULL",
        (f"{invoice_id}_failure",),
    )
    if not row:
        return False
    record = cancel_remaining_attempts(record_from_row(row), "Invoice paid", now)
    mark_resolved(record, now)
    logger.info("failed payment %s resolved by invoice payment", record.id)
    return True


def _lock_open_record(cur, payment_id: str) -> Optional[FailedPayment]:
    cur.execute(
        f"SELECT {_COLUMNS} FROM failed_payments WHERE id = %s AND resolved_at IS NULL FOR UPDATE",
        (payment_id,),
    )
    row = cur.fetchone()
    return record_from_row(row) if row else None


def _store_attempts(cur, record: FailedPayment, now: datetime) -> None:
    cur.execute(
        "UPDATE failed_payments SET retry_attempts = %s, updated_at = %s WHERE id = %s",
        (_attempts_json(record), now, record.id),
    )


def claim_attempt(payment_id: str, attempt_id: str, now: datetime) -> FailedPayment:
    """
    Move one scheduled attempt to ``processing`` while holding the payment row lock.

    Only one attempt per payment may be in flight. A payment that already has
    one, or whose attempt has moved on since it was read, is refused with a
    conflict so the gateway is never charged twice.
    """
    with transaction() as cur:
        record = _lock_open_record(cur, payment_id)
        if record is None:
            raise AppError(ErrorKind.CONFLICT, "Payment has already been recovered")
        if processing_attempt(record) is not None:
            raise AppError(ErrorKind.CONFLICT, "A retry is already in progress for this payment")
        current = next((item for item in record.retry_attempts if item.id == attempt_id), None)
        if current is None or current.status != RetryStatus.SCHEDULED:
            raise AppError(ErrorKind.CONFLICT, "Retry attempt is no longer scheduled")
        record = advance_attempt_status(record, attempt_id, RetryStatus.PROCESSING, now=now)
        _store_attempts(cur, record, now)
    return record


def is_stale(attempt: RetryAttempt, now: datetime) -> bool:
    started = attempt.executed_date or attempt.scheduled_date
    return now - started >= timedelta(minutes=config.RETRY_PROCESSING_TIMEOUT_MINUTES)


def release_stale_attempt(payment_id: str, now: datetime) -> bool:
    """Fail an attempt left in ``processing`` past the timeout, e.g. by a crashed run."""
    with transaction() as cur:
        record = _lock_open_record(cur, payment_id)
        stuck = processing_attempt(record) if record else None
        if stuck is None or not is_stale(stuck, now):
            return False
        record = advance_attempt_status(record, stuck.id, RetryStatus.FAILED, "Interrupted while processing", now)
        _store_attempts(cur, record, now)
    logger.warning(
        "released stale retry payment=%s attempt=%s exhausted=%s",
        payment_id,
        stuck.attempt_number,
        has_exhausted_retries(record),
    )
    return True


def execute_retry(record: FailedPayment, attempt: RetryAttempt, now: datetime) -> RetryResult:
    """Run one attempt against the processor and persist every transition."""
    record = claim_attempt(record.id, attempt.id, now)

    try:
        outcome = payments_gateway.retry_invoice(record.invoice_id)
    except Exception as exc:
        logger.exception("retry %s raised", attempt.id)
        outcome = payments_gateway.RetryOutcome(success=False, message=str(exc) or type(exc).__name__)

    if outcome.success:
        record = advance_attempt_status(record, attempt.id, RetryStatus.SUCCEEDED, outcome.message, now)
        record = cancel_remaining_attempts(record, "Payment recovered", now)
        mark_resolved(record, now)
        logger.info("retry succeeded payment=%s attempt=%s", record.id, attempt.attempt_number)
    else:
        record = advance_attempt_status(record, attempt.id, RetryStatus.FAILED, outcome.message, now)
        save_attempts(record, now)
        logger.warning(
            "retry failed payment=%s attempt=%s message=%s exhausted=%s",
            record.id,
            attempt.attempt_number,
            outcome.message,
            has_exhausted_retries(record),
        )
    return RetryResult(success=outcome.success, message=outcome.message, payment_intent_id=outcome.payment_intent_id)


def process_scheduled_retries(now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    rows = fetch_all(
        f"""
        SELECT {_COLUMNS}
        FROM failed_payments
        WHERE resolved_at IS NULL
        ORDER BY failure_date, id
        """
    )
    processed = 0
    for row in rows:
        try:
            record = record_from_row(row)
            in_flight = processing_attempt(record)
            if in_flight is not None:
                # the next scheduled attempt waits for a later run
                if is_stale(in_flight, now):
                    release_stale_attempt(record.id, now)
                continue
            attempt = next_pending_attempt(record)
            if attempt is None or attempt.scheduled_date > now:
                continue
            execute_retry(record, attempt, now)
            processed += 1
        except AppError as exc:
            logger.info("skipped retries for payment %s: %s", row.get("id"), exc.message)
        except Exception:
            logger.exception("could not process retries for payment %s", row.get("id"))
    return processed


def retry_failed_payment_now(failed_payment_id: str, now: Optional[datetime] = None) -> RetryResult:
    now = now or utcnow()
    record, resolved_at = get_failed_payment(failed_payment_id)
    if resolved_at is not None:
        raise AppError(ErrorKind.CONFLICT, "Payment has already been recovered")
    if processing_attempt(record) is not None:
        raise AppError(ErrorKind.CONFLICT, "A retry is already in progress for this payment")
    attempt = next_pending_attempt(record)
    if attempt is None:
        raise AppError(ErrorKind.CONFLICT, "No retry attempts remaining")
    return execute_retry(record, attempt, now)


def describe_failed_payment(row: dict, now: datetime) -> dict:
    record = record_from_row(row)
    upcoming = next_pending_attempt(record)
    attempted = [attempt for attempt in record.retry_attempts if attempt.status != RetryStatus.SCHEDULED]
    return {
        **record.model_dump(mode="json"),
        "resolved_at": row.get("resolved_at"),
        "customer_name": row.get("customer_name"),
        "customer_email": row.get("customer_email"),
        "next_retry_date": upcoming.scheduled_date if upcoming else None,
        "attempts_made": len(attempted),
        "exhausted": has_exhausted_retries(record),
        "attempt_lines": [format_retry_attempt(attempt, now) for attempt in record.retry_attempts],
    }


def list_failed_payments(status_filter: StatusFilter = "open", now: Optional[datetime] = None) -> list[dict]:
    now = now or utcnow()
    where = {
        "open": "WHERE fp.resolved_at IS NULL",
        "resolved": "WHERE fp.resolved_at IS NOT NULL",
        "all": "",
    }[status_filter]
    rows = fetch_all(
        f"""
        SELECT fp.id, fp.user_id, fp.amount, fp.currency, fp.failure_date, fp.failure_type,
               fp.failure_message, fp.payment_method, fp.retry_attempts, fp.subscription_id,
               fp.invoice_id, fp.max_retries, fp.resolved_at,
               concat_ws(' ', p.first_name, p.last_name) AS customer_name,
               p.email AS customer_email
        FROM failed_payments fp
        LEFT JOIN profiles p ON p.id = fp.user_id
        {where}
        ORDER BY fp.failure_date DESC
        """
    )
    return [describe_failed_payment(row, now) for row in rows]
