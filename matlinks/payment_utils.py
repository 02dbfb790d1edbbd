"""
Retry schedule for failed payments.

Everything here is pure: values in, new values out. Records are frozen
pydantic models holding their attempts in a tuple, so an update always
produces a new record and leaves the input untouched. Storage, gateway
calls and error handling belong to the callers in ``payment_failures``.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict

from matlinks.date_utils import format_date, relative_time, utcnow

DEFAULT_RETRY_SCHEDULE = (1, 3, 7)


class PaymentFailureType(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CARD_DECLINED = "card_declined"
    EXPIRED_CARD = "expired_card"
    INVALID_CVC = "invalid_cvc"
    PROCESSING_ERROR = "processing_error"
    UNKNOWN = "unknown"


FAILURE_TYPE_MESSAGES = {
    PaymentFailureType.INSUFFICIENT_FUNDS: "Insufficient funds in the account",
    PaymentFailureType.CARD_DECLINED: "Card was declined by the issuer",
    PaymentFailureType.EXPIRED_CARD: "Card has expired",
    PaymentFailureType.INVALID_CVC: "Invalid CVC code provided",
    PaymentFailureType.PROCESSING_ERROR: "Payment processor encountered an error",
    PaymentFailureType.UNKNOWN: "Unknown payment failure",
}


class RetryStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({RetryStatus.SCHEDULED, RetryStatus.PROCESSING})


class RetryAttempt(BaseModel):
    id: str
    payment_id: str
    attempt_number: int
    scheduled_date: datetime
    status: RetryStatus = RetryStatus.SCHEDULED
    executed_date: Optional[datetime] = None
    result: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentInfo(BaseModel):
    id: str
    user_id: int
    amount: int
    currency: str
    payment_method: str
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None


class FailedPayment(BaseModel):
    id: str
    user_id: int
    amount: int
    currency: str
    failure_date: datetime
    failure_type: PaymentFailureType
    failure_message: str
    payment_method: str
    retry_attempts: tuple[RetryAttempt, ...] = ()
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    max_retries: int

    model_config = ConfigDict(frozen=True)


def failure_type_from_code(code: Optional[str]) -> PaymentFailureType:
    """Map a processor decline code onto a failure type; unrecognised codes are ``unknown``."""
    try:
        return PaymentFailureType((code or "").strip().lower())
    except ValueError:
        return PaymentFailureType.UNKNOWN


def compute_retry_dates(base_date: datetime, offsets: Sequence[int] = DEFAULT_RETRY_SCHEDULE) -> list[datetime]:
    """One date per offset, each ``base_date`` plus that many days."""
    return [base_date + timedelta(days=days) for days in offsets]


def build_failed_payment_record(
    payment_info: PaymentInfo,
    failure_type: PaymentFailureType,
    failure_message: str,
    max_retries: Optional[int] = None,
    schedule: Sequence[int] = DEFAULT_RETRY_SCHEDULE,
    failure_date: Optional[datetime] = None,
) -> FailedPayment:
    """
    Create the record for a payment that just failed.

    Only the first ``max_retries`` offsets of ``schedule`` are used, so the
    record holds ``min(max_retries, len(schedule))`` attempts. Attempt ids are
    ``<payment id>_retry_<n>`` with ``n`` starting at 1, which keeps them stable
    across reloads of the same record.
    """
    if max_retries is None:
        max_retries = len(schedule)
    failed_at = failure_date or utcnow()
    effective_schedule = list(schedule)[: max(max_retries, 0)]
    attempts = tuple(
        RetryAttempt(
            id=f"{payment_info.id}_retry_{index}",
            payment_id=payment_info.id,
            attempt_number=index,
            scheduled_date=scheduled,
        )
        for index, scheduled in enumerate(compute_retry_dates(failed_at, effective_schedule), start=1)
    )
    return FailedPayment(
        id=payment_info.id,
        user_id=payment_info.user_id,
        amount=payment_info.amount,
        currency=payment_info.currency,
        failure_date=failed_at,
        failure_type=failure_type,
        failure_message=failure_message,
        payment_method=payment_info.payment_method,
        retry_attempts=attempts,
        subscription_id=payment_info.subscription_id,
        invoice_id=payment_info.invoice_id,
        max_retries=max_retries,
    )


def next_pending_attempt(record: FailedPayment) -> Optional[RetryAttempt]:
    for attempt in record.retry_attempts:
        if attempt.status == RetryStatus.SCHEDULED:
            return attempt
    return None


def processing_attempt(record: FailedPayment) -> Optional[RetryAttempt]:
    """The attempt currently in flight, if any. A payment never has more than one."""
    for attempt in record.retry_attempts:
        if attempt.status == RetryStatus.PROCESSING:
            return attempt
    return None


def has_exhausted_retries(record: FailedPayment) -> bool:
    return not any(attempt.status in ACTIVE_STATUSES for attempt in record.retry_attempts)


def has_succeeded(record: FailedPayment) -> bool:
    return any(attempt.status == RetryStatus.SUCCEEDED for attempt in record.retry_attempts)


def advance_attempt_status(
    record: FailedPayment,
    attempt_id: str,
    new_status: RetryStatus,
    result_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FailedPayment:
    """
    Return a copy of ``record`` with one attempt moved to ``new_status``.

    ``executed_date`` is stamped whenever the new status is anything other
    than ``scheduled``. An unknown ``attempt_id`` yields an equal copy.
    """
    stamp = now or utcnow()
    updated = []
    for attempt in record.retry_attempts:
        if attempt.id != attempt_id:
            updated.append(attempt)
            continue
        changes = {"status": new_status, "result": result_message}
        if new_status != RetryStatus.SCHEDULED:
            changes["executed_date"] = stamp
        updated.append(attempt.model_copy(update=changes))
    return record.model_copy(update={"retry_attempts": tuple(updated)})


def cancel_remaining_attempts(
    record: FailedPayment,
    reason: str,
    now: Optional[datetime] = None,
) -> FailedPayment:
    """Move every still-scheduled attempt to ``cancelled``."""
    result = record
    for attempt in record.retry_attempts:
        if attempt.status == RetryStatus.SCHEDULED:
            result = advance_attempt_status(result, attempt.id, RetryStatus.CANCELLED, reason, now)
    return result


def format_retry_attempt(attempt: RetryAttempt, now: Optional[datetime] = None) -> str:
    label = f"Attempt #{attempt.attempt_number} - {attempt.status.value.capitalize()}"
    if attempt.status == RetryStatus.SCHEDULED:
        when = relative_time(attempt.scheduled_date, now or utcnow())
        return f"{label} for {format_date(attempt.scheduled_date)} ({when})"
    if attempt.executed_date is not None:
        text = f"{label} on {format_date(attempt.executed_date)}"
        if attempt.result:
            text += f" - {attempt.result}"
        return text
    return label
