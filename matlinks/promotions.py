import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from matlinks.date_utils import utcnow
from matlinks.db import fetch_one, transaction
from matlinks.errors import AppError, ErrorKind

logger = logging.getLogger(__name__)

_PROMOTION_COLUMNS = """
    id, code, description, discount_type, discount_value, start_date, end_date,
    max_uses, current_uses, is_active
"""


class PromotionCheck(BaseModel):
    is_valid: bool
    message: str
    promotion_id: Optional[int] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def evaluate_promotion(promotion: Optional[dict], already_redeemed: bool, today: date) -> PromotionCheck:
    """Apply the redemption rules, in order, to a loaded promotion row."""
    if not promotion or not promotion.get("is_active"):
        return PromotionCheck(is_valid=False, message="Invalid promotion code")
    if promotion.get("end_date") is not None and promotion["end_date"] < today:
        return PromotionCheck(is_valid=False, message="Promotion has expired")
    if promotion.get("start_date") is not None and promotion["start_date"] > today:
        return PromotionCheck(is_valid=False, message="Promotion has not started yet")
    max_uses = promotion.get("max_uses")
    if max_uses is not None and (promotion.get("current_uses") or 0) >= max_uses:
        return PromotionCheck(is_valid=False, message="Promotion has reached maximum usage limit")
    if already_redeemed:
        return PromotionCheck(is_valid=False, message="You have already used this promotion")
    return PromotionCheck(
        is_valid=True,
        message="Promotion is valid",
        promotion_id=promotion["id"],
        discount_type=promotion["discount_type"],
        discount_value=promotion["discount_value"],
    )


def apply_discount(amount_minor: int, discount_type: str, discount_value) -> int:
    """Discounted amount in minor units, never below zero."""
    value = Decimal(str(discount_value))
    if discount_type == "percentage":
        discounted = Decimal(amount_minor) * (Decimal(100) - value) / Decimal(100)
    else:
        discounted = Decimal(amount_minor) - value * 100
    return max(int(discounted.quantize(Decimal(1))), 0)


def _load(cur, code: str, user_id: int) -> tuple[Optional[dict], bool]:
    cur.execute(f"SELECT {_PROMOTION_COLUMNS} FROM promotions WHERE code = %s", (normalize_code(code),))
    promotion = cur.fetchone()
    if not promotion:
        return None, False
    cur.execute(
        "SELECT 1 FROM promotion_redemptions WHERE promotion_id = %s AND user_id = %s",
        (promotion["id"], user_id),
    )
    return promotion, cur.fetchone() is not None


def validate_promotion(code: str, user_id: int, today: Optional[date] = None) -> PromotionCheck:
    today = today or utcnow().date()
    promotion = fetch_one(f"SELECT {_PROMOTION_COLUMNS} FROM promotions WHERE code = %s", (normalize_code(code),))
    redeemed = False
    if promotion:
        redeemed = (
            fetch_one(
                "SELECT 1 FROM promotion_redemptions WHERE promotion_id = %s AND user_id = %s",
                (promotion["id"], user_id),
            )
            is not None
        )
    return evaluate_promotion(promotion, redeemed, today)


def apply_promotion(code: str, user_id: int, order_ref: Optional[str] = None, today: Optional[date] = None) -> PromotionCheck:
    """
    Redeem a code for a user.

    The use counter only moves through a conditional UPDATE, so concurrent
    redemptions can never push ``current_uses`` past ``max_uses``.
    """
    today = today or utcnow().date()
    with transaction() as cur:
        promotion, redeemed = _load(cur, code, user_id)
        check = evaluate_promotion(promotion, redeemed, today)
        if not check.is_valid:
            return check

        cur.execute(
            """
            UPDATE promotions
            SET current_uses = current_uses + 1, updated_at = now()
            WHERE id = %s
              AND is_active = true
              AND (max_uses IS NULL OR current_uses < max_uses)
            RETURNING current_uses
            """,
            (check.promotion_id,),
        )
        if cur.fetchone() is None:
            raise AppError(ErrorKind.CONFLICT, "Promotion has reached maximum usage limit")

        cur.execute(
            """
            INSERT INTO promotion_redemptions (promotion_id, user_id, order_ref, redeemed_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (promotion_id, user_id) DO NOTHING
            RETURNING id
            """,
            (check.promotion_id, user_id, order_ref),
        )
        if cur.fetchone() is None:
            raise AppError(ErrorKind.CONFLICT, "You have already used this promotion")

    logger.info("promotion %s redeemed by user %s", check.promotion_id, user_id)
    return check.model_copy(update={"message": "Promotion applied successfully"})


def remove_promotion(code: str, user_id: int) -> bool:
    with transaction() as cur:
        cur.execute("SELECT id FROM promotions WHERE code = %s", (normalize_code(code),))
        promotion = cur.fetchone()
        if not promotion:
            raise AppError(ErrorKind.NOT_FOUND, "Invalid promotion code")
        cur.execute(
            """
            DELETE FROM promotion_redemptions
            WHERE promotion_id = %s AND user_id = %s
            RETURNING id
            """,
            (promotion["id"], user_id),
        )
        if cur.fetchone() is None:
            return False
        cur.execute(
            """
            UPDATE promotions
            SET current_uses = GREATEST(current_uses - 1, 0), updated_at = now()
            WHERE id = %s
            """,
            (promotion["id"],),
        )
    logger.info("promotion %s removed for user %s", promotion["id"], user_id)
    return True
