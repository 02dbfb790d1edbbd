from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_staff
from matlinks.db import execute_returning_one, fetch_all, fetch_one, transaction
from matlinks.errors import AppError, ErrorKind, not_found
from matlinks.schemas import PromoteMemberIn, RankIn, RankOut, RankProgressionOut
from matlinks.validation import validate_hex_color, validate_required

router = APIRouter(prefix="/ranks", tags=["ranks"])

_COLUMNS = "id, name, color, display_order, description"


def _validate(payload: RankIn) -> None:
    validate_required(payload.name, "Rank name")
    validate_hex_color(payload.color, "Rank color")


@router.get("", response_model=list[RankOut])
def list_ranks(_: dict = Depends(require_staff)):
    rows = fetch_all(f"SELECT {_COLUMNS} FROM ranks ORDER BY display_order, name")
    return [RankOut.model_validate(row) for row in rows]


@router.post("", response_model=RankOut, status_code=201)
def create_rank(payload: RankIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        INSERT INTO ranks (name, color, display_order, description)
        VALUES (%s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (payload.name.strip(), payload.color, payload.display_order, payload.description),
    )
    audit_user_action(user, "rank.create", "rank", row["id"])
    return RankOut.model_validate(row)


@router.put("/{rank_id}", response_model=RankOut)
def update_rank(rank_id: int, payload: RankIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        UPDATE ranks
        SET name=%s, color=%s, display_order=%s, description=%s, updated_at=now()
        WHERE id=%s
        RETURNING {_COLUMNS}
        """,
        (payload.name.strip(), payload.color, payload.display_order, payload.description, rank_id),
    )
    if not row:
        raise not_found("Rank")
    audit_user_action(user, "rank.update", "rank", rank_id)
    return RankOut.model_validate(row)


@router.delete("/{rank_id}")
def delete_rank(rank_id: int, user: dict = Depends(require_manager)):
    if fetch_one("SELECT 1 FROM members WHERE current_rank_id = %s LIMIT 1", (rank_id,)):
        raise AppError(ErrorKind.CONFLICT, "Rank is assigned to members")
    row = execute_returning_one("DELETE FROM ranks WHERE id=%s RETURNING id", (rank_id,))
    if not row:
        raise not_found("Rank")
    audit_user_action(user, "rank.delete", "rank", rank_id)
    return {"status": "ok", "id": row["id"]}


@router.post("/members/{member_id}/promote", response_model=RankProgressionOut, status_code=201)
def promote_member(member_id: int, payload: PromoteMemberIn, user: dict = Depends(require_manager)):
    with transaction() as cur:
        cur.execute("SELECT id, current_rank_id FROM members WHERE id = %s FOR UPDATE", (member_id,))
        member = cur.fetchone()
        if not member:
            raise not_found("Member")
        if member["current_rank_id"] == payload.to_rank_id:
            raise AppError(ErrorKind.CONFLICT, "Member already holds this rank")
        cur.execute("SELECT id FROM ranks WHERE id = %s", (payload.to_rank_id,))
        if not cur.fetchone():
            raise not_found("Rank")
        cur.execute(
            """
            INSERT INTO rank_progressions (member_id, from_rank_id, to_rank_id, promoted_by, notes)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, member_id, NULL::text AS member_name, from_rank_id, NULL::text AS from_rank_name,
                      to_rank_id, NULL::text AS to_rank_name, promoted_by, promoted_at, notes
            """,
            (member_id, member["current_rank_id"], payload.to_rank_id, user["id"], payload.notes),
        )
        progression = cur.fetchone()
        cur.execute(
            "UPDATE members SET current_rank_id=%s, updated_at=now() WHERE id=%s",
            (payload.to_rank_id, member_id),
        )
    audit_user_action(
        user,
        "rank.promote",
        "member",
        member_id,
        {"from_rank_id": member["current_rank_id"], "to_rank_id": payload.to_rank_id},
    )
    return RankProgressionOut.model_validate(progression)


@router.get("/history", response_model=list[RankProgressionOut])
def rank_history(
    member_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _: dict = Depends(require_staff),
):
    rows = fetch_all(
        """
        SELECT rp.id, rp.member_id, concat_ws(' ', p.first_name, p.last_name) AS member_name,
               rp.from_rank_id, fr.name AS from_rank_name, rp.to_rank_id, tr.name AS to_rank_name,
               rp.promoted_by, rp.promoted_at, rp.notes
        FROM rank_progressions rp
        JOIN members m ON m.id = rp.member_id
        JOIN profiles p ON p.id = m.profile_id
        LEFT JOIN ranks fr ON fr.id = rp.from_rank_id
        JOIN ranks tr ON tr.id = rp.to_rank_id
        WHERE (%s::int IS NULL OR rp.member_id = %s)
        ORDER BY rp.promoted_at DESC
        LIMIT %s
        """,
        (member_id, member_id, limit),
    )
    return [RankProgressionOut.model_validate(row) for row in rows]
