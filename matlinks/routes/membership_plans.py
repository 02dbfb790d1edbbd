from fastapi import APIRouter, Depends, Query

from matlinks.audit import audit_user_action
from matlinks.auth import require_manager, require_user
from matlinks.db import execute_returning_one, fetch_all
from matlinks.errors import not_found
from matlinks.schemas import MembershipPlanIn, MembershipPlanOut
from matlinks.validation import validate_required

router = APIRouter(prefix="/membership-plans", tags=["membership-plans"])

_COLUMNS = "id, gym_id, name, description, price, billing_interval, class_limit, stripe_price_id, is_active"


def _params(payload: MembershipPlanIn) -> tuple:
    return (
        payload.gym_id,
        payload.name.strip(),
        payload.description,
        payload.price,
        payload.billing_interval,
        payload.class_limit,
        payload.stripe_price_id,
    )


@router.get("", response_model=list[MembershipPlanOut])
def list_plans(
    include_inactive: bool = Query(default=False),
    _: dict = Depends(require_user),
):
    rows = fetch_all(
        f"""
        SELECT {_COLUMNS}
        FROM membership_plans
        WHERE (%s OR is_active = true)
        ORDER BY price, name
        """,
        (include_inactive,),
    )
    return [MembershipPlanOut.model_validate(row) for row in rows]


@router.post("", response_model=MembershipPlanOut, status_code=201)
def create_plan(payload: MembershipPlanIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Plan name")
    row = execute_returning_one(
        f"""
        INSERT INTO membership_plans (
            gym_id, name, description, price, billing_interval, class_limit, stripe_price_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        _params(payload),
    )
    audit_user_action(user, "plan.create", "membership_plan", row["id"])
    return MembershipPlanOut.model_validate(row)


@router.put("/{plan_id}", response_model=MembershipPlanOut)
def update_plan(plan_id: int, payload: MembershipPlanIn, user: dict = Depends(require_manager)):
    validate_required(payload.name, "Plan name")
    row = execute_returning_one(
        f"""
        UPDATE membership_plans
        SET gym_id=%s, name=%s, description=%s, price=%s, billing_interval=%s,
            class_limit=%s, stripe_price_id=%s, updated_at=now()
        WHERE id=%s
        RETURNING {_COLUMNS}
        """,
        _params(payload) + (plan_id,),
    )
    if not row:
        raise not_found("Membership plan")
    audit_user_action(user, "plan.update", "membership_plan", plan_id)
    return MembershipPlanOut.model_validate(row)


@router.post("/{plan_id}/deactivate")
def deactivate_plan(plan_id: int, user: dict = Depends(require_manager)):
    row = execute_returning_one(
        """
        UPDATE membership_plans SET is_active=false, updated_at=now()
        WHERE id=%s
        RETURNING id
        """,
        (plan_id,),
    )
    if not row:
        raise not_found("Membership plan")
    audit_user_action(user, "plan.deactivate", "membership_plan", plan_id)
    return {"status": "ok", "id": row["id"], "active": False}
