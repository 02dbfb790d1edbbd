from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all
from matlinks.errors import not_found
from matlinks.schemas import ClassIn, ClassOut
from matlinks.validation import validate_required

router = APIRouter(prefix="/classes", tags=["classes"])

_RETURNING = """
    RETURNING id, name, description, class_type_id, NULL::text AS class_type_name,
              location_id, instructor_id, max_capacity, requires_booking, active
"""


def _params(payload: ClassIn) -> tuple:
    return (
        payload.name.strip(),
        payload.description,
        payload.class_type_id,
        payload.location_id,
        payload.instructor_id,
        payload.max_capacity,
        payload.requires_booking,
    )


@router.get("", response_model=list[ClassOut])
def list_classes(
    location_id: int | None = Query(default=None),
    active_only: bool = Query(default=True),
    _: dict = Depends(require_staff),
):
    rows = fetch_all(
        """
        SELECT c.id, c.name, c.description, c.class_type_id, ct.name AS class_type_name,
               c.location_id, c.instructor_id, c.max_capacity, c.requires_booking, c.active
        FROM classes c
        LEFT JOIN class_types ct ON ct.id = c.class_type_id
        WHERE (%s::int IS NULL OR c.location_id = %s)
          AND (%s = false OR c.active = true)
        ORDER BY c.name
        """,
        (location_id, location_id, active_only),
    )
    return [ClassOut.model_validate(row) for row in rows]


@router.post("", response_model=ClassOut, status_code=201)
def create_class(payload: ClassIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Class name")
    row = execute_returning_one(
        """
        INSERT INTO classes (
            name, description, class_type_id, location_id, instructor_id, max_capacity, requires_booking
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        + _RETURNING,
        _params(payload),
    )
    audit_user_action(user, "class.create", "class", row["id"])
    return ClassOut.model_validate(row)


@router.put("/{class_id}", response_model=ClassOut)
def update_class(class_id: int, payload: ClassIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Class name")
    row = execute_returning_one(
        """
        UPDATE classes
        SET name=%s, description=%s, class_type_id=%s, location_id=%s, instructor_id=%s,
            max_capacity=%s, requires_booking=%s, updated_at=now()
        WHERE id=%s
        """
        + _RETURNING,
        _params(payload) + (class_id,),
    )
    if not row:
        raise not_found("Class")
    audit_user_action(user, "class.update", "class", class_id)
    return ClassOut.model_validate(row)


@router.post("/{class_id}/deactivate")
def deactivate_class(class_id: int, user: dict = Depends(require_manager)):
    row = execute_returning_one(
        """
        UPDATE classes SET active=false, updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (class_id,),
    )
    if not row:
        raise not_found("Class")
    audit_user_action(user, "class.deactivate", "class", class_id)
    return {"status": "ok", "id": row["id"], "active": False}
