from datetime import date, datetime, time, timedelta, timezone

from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_user
from matlinks.date_utils import utcnow, weekly_occurrences
from matlinks.db import execute_returning_one, fetch_all, transaction
from matlinks.errors import ValidationError, not_found
from matlinks.schemas import RecurringScheduleIn, ScheduleIn, ScheduleOut
from matlinks.validation import validate_date_range, validate_time_range

router = APIRouter(prefix="/schedules", tags=["schedules"])

_MAX_GENERATED = 366
_RETURNING = """
    RETURNING id, class_id, NULL::text AS class_name, location_id, instructor_id,
              NULL::text AS instructor_name, start_time, end_time, notes, active
"""


@router.get("", response_model=list[ScheduleOut])
def list_schedules(
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    location_id: int | None = Query(default=None),
    _: dict = Depends(require_user),
):
    start = start or utcnow().date()
    end = end or start + timedelta(days=7)
    validate_date_range(start, end)
    rows = fetch_all(
        """
        SELECT s.id, s.class_id, c.name AS class_name, s.location_id, s.instructor_id,
               NULLIF(concat_ws(' ', p.first_name, p.last_name), '') AS instructor_name,
               s.start_time, s.end_time, s.notes, s.active
        FROM class_schedules s
        JOIN classes c ON c.id = s.class_id
        LEFT JOIN profiles p ON p.id = s.instructor_id
        WHERE s.start_time >= %s
          AND s.start_time < %s
          AND (%s::int IS NULL OR s.location_id = %s)
        ORDER BY s.start_time
        """,
        (
            datetime.combine(start, time.min, tzinfo=timezone.utc),
            datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc),
            location_id,
            location_id,
        ),
    )
    return [ScheduleOut.model_validate(row) for row in rows]


@router.post("", response_model=ScheduleOut, status_code=201)
def create_schedule(payload: ScheduleIn, user: dict = Depends(require_manager)):
    validate_time_range(payload.start_time, payload.end_time)
    row = execute_returning_one(
        """
        INSERT INTO class_schedules (class_id, location_id, instructor_id, start_time, end_time, notes)
        VALUES (%s, %s, %s, %s, %s, %s)
        """
        + _RETURNING,
        (
            payload.class_id,
            payload.location_id,
            payload.instructor_id,
            payload.start_time,
            payload.end_time,
            payload.notes,
        ),
    )
    audit_user_action(user, "schedule.create", "schedule", row["id"])
    return ScheduleOut.model_validate(row)


@router.post("/recurring", status_code=201)
def create_recurring_schedule(payload: RecurringScheduleIn, user: dict = Depends(require_manager)):
    validate_date_range(payload.start_date, payload.end_date)
    if payload.start_time >= payload.end_time:
        raise ValidationError("End time must be after start time")
    if any(day < 0 or day > 6 for day in payload.weekdays):
        raise ValidationError("Weekdays must be between 0 (Monday) and 6 (Sunday)")

    occurrences = weekly_occurrences(
        payload.start_date, payload.end_date, payload.weekdays, payload.start_time, payload.end_time
    )
    if not occurrences:
        raise ValidationError("No sessions fall inside the selected dates")
    if len(occurrences) > _MAX_GENERATED:
        raise ValidationError(f"At most {_MAX_GENERATED} sessions can be generated at once")

    ids = []
    with transaction() as cur:
        for starts_at, ends_at in occurrences:
            cur.execute(
                """
                INSERT INTO class_schedules (class_id, location_id, instructor_id, start_time, end_time)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id
                """,
                (payload.class_id, payload.location_id, payload.instructor_id, starts_at, ends_at),
            )
            ids.append(cur.fetchone()["id"])
    audit_user_action(user, "schedule.create_recurring", "class", payload.class_id, {"created": len(ids)})
    return {"status": "ok", "created": len(ids), "ids": ids}


@router.put("/{schedule_id}", response_model=ScheduleOut)
def update_schedule(schedule_id: int, payload: ScheduleIn, user: dict = Depends(require_manager)):
    validate_time_range(payload.start_time, payload.end_time)
    row = execute_returning_one(
        """
        UPDATE class_schedules
        SET class_id=%s, location_id=%s, instructor_id=%s, start_time=%s, end_time=%s, notes=%s,
            updated_at=now()
        WHERE id=%s
        """
        + _RETURNING,
        (
            payload.class_id,
            payload.location_id,
            payload.instructor_id,
            payload.start_time,
            payload.end_time,
            payload.notes,
            schedule_id,
        ),
    )
    if not row:
        raise not_found("Schedule")
    audit_user_action(user, "schedule.update", "schedule", schedule_id)
    return ScheduleOut.model_validate(row)


@router.post("/{schedule_id}/cancel")
def cancel_schedule(schedule_id: int, user: dict = Depends(require_manager)):
    row = execute_returning_one(
        """
        UPDATE class_schedules SET active=false, updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (schedule_id,),
    )
    if not row:
        raise not_found("Schedule")
    audit_user_action(user, "schedule.cancel", "schedule", schedule_id)
    return {"status": "ok", "id": row["id"], "active": False}
