from fastapi import APIRouter, Depends

from matlinks import promotions
from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_user
from matlinks.db import execute_returning_one, fetch_all
from matlinks.errors import not_found
from matlinks.promotions import PromotionCheck
from matlinks.schemas import PromotionCodeIn, PromotionIn, PromotionOut
from matlinks.validation import validate_date_range, validate_discount, validate_required

router = APIRouter(prefix="/promotions", tags=["promotions"])

_COLUMNS = """
    id, code, description, discount_type, discount_value, start_date, end_date,
    max_uses, current_uses, is_active
"""


def _validate(payload: PromotionIn) -> None:
    validate_required(payload.code, "Promotion code")
    validate_discount(payload.discount_type, payload.discount_value)
    validate_date_range(payload.start_date, payload.end_date)


def _params(payload: PromotionIn) -> tuple:
    return (
        promotions.normalize_code(payload.code),
        payload.description,
        payload.discount_type,
        payload.discount_value,
        payload.start_date,
        payload.end_date,
        payload.max_uses,
    )


@router.get("", response_model=list[PromotionOut])
def list_promotions(_: dict = Depends(require_manager)):
    rows = fetch_all(f"SELECT {_COLUMNS} FROM promotions ORDER BY created_at DESC")
    return [PromotionOut.model_validate(row) for row in rows]


@router.post("", response_model=PromotionOut, status_code=201)
def create_promotion(payload: PromotionIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        INSERT INTO promotions (
            code, description, discount_type, discount_value, start_date, end_date, max_uses
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        _params(payload),
    )
    audit_user_action(user, "promotion.create", "promotion", row["id"], {"code": row["code"]})
    return PromotionOut.model_validate(row)


@router.put("/{promotion_id}", response_model=PromotionOut)
def update_promotion(promotion_id: int, payload: PromotionIn, user: dict = Depends(require_manager)):
    _validate(payload)
    row = execute_returning_one(
        f"""
        UPDATE promotions
        SET code=%s, description=%s, discount_type=%s, discount_value=%s,
            start_date=%s, end_date=%s, max_uses=%s, updated_at=now()
        WHERE id=%s
        RETURNING {_COLUMNS}
        """,
        _params(payload) + (promotion_id,),
    )
    if not row:
        raise not_found("Promotion")
    audit_user_action(user, "promotion.update", "promotion", promotion_id)
    return PromotionOut.model_validate(row)


@router.post("/{promotion_id}/deactivate")
def deactivate_promotion(promotion_id: int, user: dict = Depends(require_manager)):
    row = execute_returning_one(
        """
        UPDATE promotions SET is_active=false, updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (promotion_id,),
    )
    if not row:
        raise not_found("Promotion")
    audit_user_action(user, "promotion.deactivate", "promotion", promotion_id)
    return {"status": "ok", "id": row["id"], "active": False}


@router.post("/validate", response_model=PromotionCheck)
def validate_code(payload: PromotionCodeIn, user: dict = Depends(require_user)):
    return promotions.validate_promotion(payload.code, user["id"])


@router.post("/apply", response_model=PromotionCheck)
def apply_code(payload: PromotionCodeIn, user: dict = Depends(require_user)):
    result = promotions.apply_promotion(payload.code, user["id"], payload.order_ref)
    if result.is_valid:
        audit_user_action(user, "promotion.apply", "promotion", result.promotion_id, {"order_ref": payload.order_ref})
    return result


@router.post("/remove")
def remove_code(payload: PromotionCodeIn, user: dict = Depends(require_user)):
    removed = promotions.remove_promotion(payload.code, user["id"])
    if removed:
        audit_user_action(user, "promotion.remove", "promotion", promotions.normalize_code(payload.code))
    return {"success": removed, "message": "Promotion removed" if removed else "Promotion was not applied"}
