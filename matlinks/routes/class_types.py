from fastapi import APIRouter, Depends

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import AppError, ErrorKind, not_found
from matlinks.schemas import ClassTypeIn, ClassTypeOut
from matlinks.validation import validate_hex_color, validate_required

router = APIRouter(prefix="/class-types", tags=["class-types"])

_COLUMNS = "id, name, description, color, active"


@router.get("", response_model=list[ClassTypeOut])
def list_class_types(_: dict = Depends(require_staff)):
    rows = fetch_all(f"SELECT {_COLUMNS} FROM class_types ORDER BY name")
    return [ClassTypeOut.model_validate(row) for row in rows]


@router.post("", response_model=ClassTypeOut, status_code=201)
def create_class_type(payload: ClassTypeIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Class type name")
    validate_hex_color(payload.color)
    row = execute_returning_one(
        f"""
        INSERT INTO class_types (name, description, color)
        VALUES (%s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (payload.name.strip(), payload.description, payload.color),
    )
    audit_user_action(user, "class_type.create", "class_type", row["id"])
    return ClassTypeOut.model_validate(row)


@router.put("/{class_type_id}", response_model=ClassTypeOut)
def update_class_type(class_type_id: int, payload: ClassTypeIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Class type name")
    validate_hex_color(payload.color)
    row = execute_returning_one(
        f"""
        UPDATE class_types
        SET name=%s, description=%s, color=%s, updated_at=now()
        WHERE id=%s
        RETURNING {_COLUMNS}
        """,
        (payload.name.strip(), payload.description, payload.color, class_type_id),
    )
    if not row:
        raise not_found("Class type")
    audit_user_action(user, "class_type.update", "class_type", class_type_id)
    return ClassTypeOut.model_validate(row)


@router.delete("/{class_type_id}")
def delete_class_type(class_type_id: int, user: dict = Depends(require_manager)):
    if fetch_one("SELECT 1 FROM classes WHERE class_type_id = %s LIMIT 1", (class_type_id,)):
        raise AppError(ErrorKind.CONFLICT, "Class type is used by existing classes")
    row = execute_returning_one("DELETE FROM class_types WHERE id=%s RETURNING id", (class_type_id,))
    if not row:
        raise not_found("Class type")
    audit_user_action(user, "class_type.delete", "class_type", class_type_id)
    return {"status": "ok", "id": row["id"]}
