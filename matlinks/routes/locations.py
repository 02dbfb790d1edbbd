from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all
from matlinks.errors import not_found
from matlinks.schemas import LocationIn, LocationOut
from matlinks.validation import validate_coordinates, validate_optional_email, validate_required

router = APIRouter(prefix="/locations", tags=["locations"])

_COLUMNS = "id, gym_id, name, address, phone, email, latitude, longitude, geofence_radius, active"


def _validate(payload: LocationIn) -> None:
    validate_required(payload.name, "Location name")
    validate_optional_email(payload.email)
    validate_coordinates(payload.latitude, payload.longitude)


@router.get("", response_model=list[LocationOut])
def list_locations(
    gym_id: int | None = Query(default=None),
    active_only: bool = Query(default=False),
    _: dict = Depends(require_staff),
):
    rows = fetch_all(
        f"""
        SELECT {_COLUMNS}
        FROM locations
        WHERE (%s::int IS NULL OR gym_id = %s)
          AND (%s = false OR active = true)
        ORDER BY name
        """,
        (gym_id, gym_id, active_only),
    )
    return [LocationOut.model_validate(row) for row in rows]


@router.post("", response_model=LocationOut, status_code=201)
def create_location(payload: LocationIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        INSERT INTO locations (gym_id, name, address, phone, email, latitude, longitude, geofence_radius)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (
            payload.gym_id,
            payload.name.strip(),
            payload.address.strip() if payload.address else None,
            payload.phone.strip() if payload.phone else None,
            payload.email,
            payload.latitude,
            payload.longitude,
            payload.geofence_radius,
        ),
    )
    audit_user_action(user, "location.create", "location", row["id"], {"gym_id": payload.gym_id})
    return LocationOut.model_validate(row)


@router.put("/{location_id}", response_model=LocationOut)
def update_location(location_id: int, payload: LocationIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        UPDATE locations
        SET gym_id=%s, name=%s, address=%s, phone=%s, email=%s,
            latitude=%s, longitude=%s, geofence_radius=%s, updated_at=now()
        WHERE id=%s
        RETURNING {_COLUMNS}
        """,
        (
            payload.gym_id,
            payload.name.strip(),
            payload.address.strip() if payload.address else None,
            payload.phone.strip() if payload.phone else None,
            payload.email,
            payload.latitude,
            payload.longitude,
            payload.geofence_radius,
            location_id,
        ),
    )
    if not row:
        raise not_found("Location")
    audit_user_action(user, "location.update", "location", location_id)
    return LocationOut.model_validate(row)


def _set_active(location_id: int, active: bool, user: dict) -> dict:
    row = execute_returning_one(
        """
        UPDATE locations SET active=%s, updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (active, location_id),
    )
    if not row:
        raise not_found("Location")
    audit_user_action(user, "location.reactivate" if active else "location.deactivate", "location", location_id)
    return {"status": "ok", "id": row["id"], "active": active}


@router.post("/{location_id}/deactivate")
def deactivate_location(location_id: int, user: dict = Depends(require_manager)):
    return _set_active(location_id, False, user)


@router.post("/{location_id}/reactivate")
def reactivate_location(location_id: int, user: dict = Depends(require_manager)):
    return _set_active(location_id, True, user)
