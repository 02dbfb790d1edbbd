"""
Endpoints driven by an external scheduler (hourly for dunning, every few
hours for retries). Both accept GET and POST because schedulers differ in
what they send.
"""

import logging
import time

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from matlinks import config, dunning, payment_failures
from matlinks.audit import AuditResult, audit_system_event
from matlinks.date_utils import utcnow
from matlinks.errors import AppError, ErrorKind
from matlinks.security import bearer_matches_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    if not bearer_matches_secret(authorization, config.CRON_SECRET):
        logger.warning("cron call rejected: bad or missing bearer token")
        raise AppError(ErrorKind.UNAUTHENTICATED, "Unauthorized")


def _failure(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": message, "timestamp": utcnow().isoformat()},
    )


@router.api_route("/process-dunning", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def process_dunning():
    started = time.perf_counter()
    logger.info("dunning run started")
    try:
        notifications = dunning.process_pending_notifications()
        cancellations = dunning.process_pending_cancellations()
    except Exception as exc:
        logger.exception("dunning run failed")
        audit_system_event("cron", "cron.process_dunning", AuditResult.FAILURE, details={"error": str(exc)})
        return _failure(str(exc) or "Unknown error")

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "dunning run finished in %sms notifications=%s cancellations=%s",
        elapsed_ms,
        notifications,
        cancellations,
    )
    audit_system_event(
        "cron",
        "cron.process_dunning",
        details={"notifications": notifications, "cancellations": cancellations, "elapsed_ms": elapsed_ms},
    )
    return {
        "success": True,
        "notifications": {
            "processed": notifications["processed"],
            "failed": notifications["failed"],
        },
        "cancellations": {"processed": cancellations["processed"]},
        "elapsed_ms": elapsed_ms,
        "timestamp": utcnow().isoformat(),
    }


@router.api_route("/process-payment-retries", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def process_payment_retries():
    started = time.perf_counter()
    try:
        processed = payment_failures.process_scheduled_retries()
    except Exception as exc:
        logger.exception("payment retry run failed")
        audit_system_event("cron", "cron.process_payment_retries", AuditResult.FAILURE, details={"error": str(exc)})
        return _failure("Internal server error")

    logger.info("payment retry run finished in %sms processed=%s", int((time.perf_counter() - started) * 1000), processed)
    audit_system_event("cron", "cron.process_payment_retries", details={"processed": processed})
    return {
        "success": True,
        "processed": processed,
        "message": f"Successfully processed {processed} payment retries",
        "timestamp": utcnow().isoformat(),
    }
