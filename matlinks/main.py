import logging
import time
import uuid

from fastapi import FastAPI, Request
from psycopg2.errors import IntegrityError

from matlinks.audit import build_request_context, clear_current_request_context, set_current_request_context
from matlinks.config import validate_security_settings
from matlinks.errors import AppError, app_error_handler, integrity_error_handler
from matlinks.migrations import apply_migrations
from matlinks.routes import (
    auth,
    bookings,
    checkins,
    class_types,
    classes,
    cron,
    finance,
    gyms,
    locations,
    members,
    membership_plans,
    profiles,
    promotions,
    ranks,
    schedules,
    webhooks,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="MatLinks API", version="0.1.0")

validate_security_settings()

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(IntegrityError, integrity_error_handler)

for module in (
    auth,
    profiles,
    gyms,
    locations,
    class_types,
    classes,
    schedules,
    members,
    ranks,
    membership_plans,
    promotions,
    bookings,
    checkins,
    finance,
    cron,
    webhooks,
):
    app.include_router(module.router)


@app.middleware("http")
async def request_context(request: Request, call_next):
    started = time.perf_counter()
    request.state.correlation_id = (
        request.headers.get("x-correlation-id") or request.headers.get("x-request-id") or uuid.uuid4().hex
    )
    context = build_request_context(request)
    set_current_request_context(correlation_id=context["correlation_id"], ip_address=context["ip_address"])
    try:
        response = await call_next(request)
    finally:
        clear_current_request_context()
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    response.headers["x-correlation-id"] = request.state.correlation_id
    logger.info(
        "%s %s -> %s in %sms cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.state.correlation_id,
    )
    return response


@app.get("/")
def root():
    return {"status": "ok", "service": "matlinks-api"}


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.on_event("startup")
def startup_migrations():
    apply_migrations()
