from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import Role, require_manager
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import AppError, ErrorKind, not_found
from matlinks.schemas import ProfileCreateIn, ProfileOut, ProfileUpdateIn
from matlinks.security import hash_password
from matlinks.validation import validate_email, validate_required

router = APIRouter(prefix="/profiles", tags=["profiles"])

_COLUMNS = "id, email, first_name, last_name, phone, role, active, created_at"


def _check_role_assignment(user: dict, role: Role) -> None:
    if role == Role.ADMIN and user.get("role") != Role.ADMIN.value:
        raise AppError(ErrorKind.FORBIDDEN, "Only admins can grant the admin role")


@router.get("", response_model=list[ProfileOut])
def list_profiles(
    role: Role | None = Query(default=None),
    _: dict = Depends(require_manager),
):
    rows = fetch_all(
        f"""
        SELECT {_COLUMNS}
        FROM profiles
        WHERE (%s::text IS NULL OR role = %s)
        ORDER BY last_name NULLS LAST, first_name
        """,
        (role.value if role else None, role.value if role else None),
    )
    return [ProfileOut.model_validate(row) for row in rows]


@router.post("", response_model=ProfileOut, status_code=201)
def create_profile(payload: ProfileCreateIn, user: dict = Depends(require_manager)):
    email = payload.email.strip().lower()
    validate_email(email)
    validate_required(payload.first_name, "First name")
    _check_role_assignment(user, payload.role)
    row = execute_returning_one(
        f"""
        INSERT INTO profiles (email, password_hash, first_name, last_name, phone, role)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (
            email,
            hash_password(payload.password),
            payload.first_name.strip(),
            payload.last_name.strip() if payload.last_name else None,
            payload.phone,
            payload.role.value,
        ),
    )
    audit_user_action(user, "profile.create", "profile", row["id"], {"email": email, "role": payload.role.value})
    return ProfileOut.model_validate(row)


@router.put("/{profile_id}", response_model=ProfileOut)
def update_profile(profile_id: int, payload: ProfileUpdateIn, user: dict = Depends(require_manager)):
    existing = fetch_one(f"SELECT {_COLUMNS} FROM profiles WHERE id = %s", (profile_id,))
    if not existing:
        raise not_found("Profile")

    role = payload.role if payload.role is not None else Role(existing["role"])
    if payload.role is not None:
        _check_role_assignment(user, role)
    if existing["id"] == user["id"] and payload.active is False:
        raise AppError(ErrorKind.CONFLICT, "You cannot deactivate your own account")

    first_name = payload.first_name.strip() if payload.first_name is not None else existing["first_name"]
    last_name = payload.last_name if payload.last_name is not None else existing["last_name"]
    phone = payload.phone if payload.phone is not None else existing["phone"]
    active = payload.active if payload.active is not None else existing["active"]

    if payload.new_password is not None:
        row = execute_returning_one(
            f"""
            UPDATE profiles
            SET first_name = %s,
                last_name = %s,
                phone = %s,
                role = %s,
                active = %s,
                password_hash = %s,
                updated_at = now()
            WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            (first_name, last_name, phone, role.value, active, hash_password(payload.new_password), profile_id),
        )
    else:
        row = execute_returning_one(
            f"""
            UPDATE profiles
            SET first_name = %s,
                last_name = %s,
                phone = %s,
                role = %s,
                active = %s,
                updated_at = now()
            WHERE id = %s
            RETURNING {_COLUMNS}
            """,
            (first_name, last_name, phone, role.value, active, profile_id),
        )
    audit_user_action(
        user,
        "profile.update",
        "profile",
        profile_id,
        {"role": role.value, "active": active, "password_changed": payload.new_password is not None},
    )
    return ProfileOut.model_validate(row)
