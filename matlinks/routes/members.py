from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import not_found
from matlinks.schemas import MemberCreateIn, MemberOut, MemberUpdateIn

router = APIRouter(prefix="/members", tags=["members"])

_SELECT = """
    SELECT m.id, m.profile_id, p.first_name, p.last_name, p.email, m.location_id,
           m.membership_plan_id, mp.name AS plan_name, m.current_rank_id, r.name AS rank_name,
           m.status, m.join_date, m.subscription_status
    FROM members m
    JOIN profiles p ON p.id = m.profile_id
    LEFT JOIN membership_plans mp ON mp.id = m.membership_plan_id
    LEFT JOIN ranks r ON r.id = m.current_rank_id
"""


def load_member(member_id: int) -> dict:
    row = fetch_one(_SELECT + " WHERE m.id = %s", (member_id,))
    if not row:
        raise not_found("Member")
    return row


@router.get("", response_model=list[MemberOut])
def list_members(
    location_id: int | None = Query(default=None),
    search: str | None = Query(default=None, max_length=80),
    _: dict = Depends(require_staff),
):
    pattern = f"%{search.strip()}%" if search and search.strip() else None
    rows = fetch_all(
        _SELECT
        + """
        WHERE (%s::int IS NULL OR m.location_id = %s)
          AND (%s::text IS NULL OR p.first_name ILIKE %s OR p.last_name ILIKE %s OR p.email ILIKE %s)
        ORDER BY p.last_name NULLS LAST, p.first_name
        """,
        (location_id, location_id, pattern, pattern, pattern, pattern),
    )
    return [MemberOut.model_validate(row) for row in rows]


@router.get("/{member_id}", response_model=MemberOut)
def get_member(member_id: int, _: dict = Depends(require_staff)):
    return MemberOut.model_validate(load_member(member_id))


@router.post("", response_model=MemberOut, status_code=201)
def create_member(payload: MemberCreateIn, user: dict = Depends(require_manager)):
    row = execute_returning_one(
        """
        INSERT INTO members (profile_id, location_id, membership_plan_id, current_rank_id, status, notes)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            payload.profile_id,
            payload.location_id,
            payload.membership_plan_id,
            payload.current_rank_id,
            payload.status,
            payload.notes,
        ),
    )
    if payload.membership_plan_id is not None:
        execute_returning_one(
            "UPDATE profiles SET current_plan_id=%s, updated_at=now() WHERE id=%s RETURNING id",
            (payload.membership_plan_id, payload.profile_id),
        )
    audit_user_action(user, "member.create", "member", row["id"], {"profile_id": payload.profile_id})
    return MemberOut.model_validate(load_member(row["id"]))


@router.put("/{member_id}", response_model=MemberOut)
def update_member(member_id: int, payload: MemberUpdateIn, user: dict = Depends(require_manager)):
    existing = load_member(member_id)
    plan_id = payload.membership_plan_id if payload.membership_plan_id is not None else existing["membership_plan_id"]
    execute_returning_one(
        """
        UPDATE members
        SET location_id=%s, membership_plan_id=%s, status=%s, notes=COALESCE(%s, notes), updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (
            payload.location_id if payload.location_id is not None else existing["location_id"],
            plan_id,
            payload.status or existing["status"],
            payload.notes,
            member_id,
        ),
    )
    if plan_id != existing["membership_plan_id"]:
        execute_returning_one(
            "UPDATE profiles SET current_plan_id=%s, updated_at=now() WHERE id=%s RETURNING id",
            (plan_id, existing["profile_id"]),
        )
    audit_user_action(user, "member.update", "member", member_id, payload.model_dump(exclude_none=True))
    return MemberOut.model_validate(load_member(member_id))
