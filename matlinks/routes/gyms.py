from fastapi import APIRouter, Depends

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import AppError, ErrorKind, not_found
from matlinks.schemas import GymIn, GymOut
from matlinks.validation import validate_optional_email, validate_required

router = APIRouter(prefix="/gyms", tags=["gyms"])

_SELECT = """
    SELECT g.id, g.name, g.description, g.email, g.phone, g.website, g.active,
           (SELECT count(*) FROM locations l WHERE l.gym_id = g.id) AS location_count
    FROM gyms g
"""


def _validate(payload: GymIn) -> None:
    validate_required(payload.name, "Gym name")
    validate_optional_email(payload.email)


@router.get("", response_model=list[GymOut])
def list_gyms(_: dict = Depends(require_staff)):
    rows = fetch_all(_SELECT + " ORDER BY g.name")
    return [GymOut.model_validate(row) for row in rows]


@router.get("/{gym_id}", response_model=GymOut)
def get_gym(gym_id: int, _: dict = Depends(require_staff)):
    row = fetch_one(_SELECT + " WHERE g.id = %s", (gym_id,))
    if not row:
        raise not_found("Gym")
    return GymOut.model_validate(row)


@router.post("", response_model=GymOut, status_code=201)
def create_gym(payload: GymIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        """
        INSERT INTO gyms (name, description, email, phone, website)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id, name, description, email, phone, website, active, 0 AS location_count
        """,
        (payload.name.strip(), payload.description, payload.email, payload.phone, payload.website),
    )
    audit_user_action(user, "gym.create", "gym", row["id"], {"name": row["name"]})
    return GymOut.model_validate(row)


@router.put("/{gym_id}", response_model=GymOut)
def update_gym(gym_id: int, payload: GymIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        """
        UPDATE gyms
        SET name=%s, description=%s, email=%s, phone=%s, website=%s, updated_at=now()
        WHERE id=%s
        RETURNING id, name, description, email, phone, website, active,
                  (SELECT count(*) FROM locations l WHERE l.gym_id = gyms.id) AS location_count
        """,
        (payload.name.strip(), payload.description, payload.email, payload.phone, payload.website, gym_id),
    )
    if not row:
        raise not_found("Gym")
    audit_user_action(user, "gym.update", "gym", gym_id)
    return GymOut.model_validate(row)


@router.delete("/{gym_id}")
def delete_gym(gym_id: int, user: dict = Depends(require_manager)):
    in_use = fetch_one("SELECT 1 FROM locations WHERE gym_id = %s LIMIT 1", (gym_id,))
    if in_use:
        raise AppError(ErrorKind.CONFLICT, "Gym still has locations. Remove them first.")
    row = execute_returning_one("DELETE FROM gyms WHERE id=%s RETURNING id", (gym_id,))
    if not row:
        raise not_found("Gym")
    audit_user_action(user, "gym.delete", "gym", gym_id)
    return {"status": "ok", "id": row["id"]}
