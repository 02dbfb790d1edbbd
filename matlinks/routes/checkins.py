from fastapi import APIRouter, Depends, Query

from matlinks import checkins
from matlinks.audit import audit_user_action
from matlinks.auth import Role, require_staff, require_user
from matlinks.checkins import CheckInMethod, MembershipCheck, PositionCheck
from matlinks.date_utils import Period
from matlinks.errors import AppError, ErrorKind
from matlinks.schemas import CheckInIn, CheckInSyncIn, CheckInSyncOut, PositionIn

router = APIRouter(prefix="/check-ins", tags=["check-ins"])


@router.post("", status_code=201)
def record(payload: CheckInIn, user: dict = Depends(require_user)):
    # Members may only check themselves in, and only from their phone.
    if user["role"] == Role.STUDENT.value:
        if payload.profile_id != user["id"]:
            raise AppError(ErrorKind.FORBIDDEN, "You can only check yourself in")
        method = CheckInMethod.MOBILE
    else:
        method = payload.check_in_method
    result = checkins.record_check_in(
        profile_id=payload.profile_id,
        location_id=payload.location_id,
        class_id=payload.class_id,
        method=method,
        checked_in_at=payload.checked_in_at,
        client_ref=payload.client_ref,
    )
    audit_user_action(
        user,
        "checkin.create",
        "profile",
        payload.profile_id,
        {"location_id": payload.location_id, "method": method.value, "created": result["created"]},
    )
    return result


@router.get("/membership/{profile_id}", response_model=MembershipCheck)
def membership(profile_id: int, _: dict = Depends(require_staff)):
    return checkins.verify_membership(profile_id)


@router.post("/verify-position", response_model=PositionCheck)
def verify_position(payload: PositionIn, _: dict = Depends(require_user)):
    return checkins.verify_position(payload.location_id, payload.latitude, payload.longitude)


@router.post("/sync", response_model=CheckInSyncOut)
def sync(payload: CheckInSyncIn, user: dict = Depends(require_staff)):
    results = checkins.sync_offline_check_ins([item.model_dump() for item in payload.items])
    created = sum(1 for item in results if item["status"] == "created")
    duplicates = sum(1 for item in results if item["status"] == "duplicate")
    errors = len(results) - created - duplicates
    audit_user_action(
        user,
        "checkin.sync",
        "check_in",
        None,
        {"total": len(results), "created": created, "duplicates": duplicates, "errors": errors},
    )
    return CheckInSyncOut(
        total=len(results),
        created=created,
        duplicates=duplicates,
        errors=errors,
        results=results,
    )


@router.get("/summary")
def summary(period: Period = Query(default="week"), _: dict = Depends(require_staff)):
    return checkins.attendance_summary(period)


@router.get("/recent")
def recent(
    location_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    _: dict = Depends(require_staff),
):
    return checkins.recent_check_ins(location_id, limit)
