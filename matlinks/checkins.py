import logging
import math
from datetime import datetime
from enum import Enum
from typing import Optional

from psycopg2.errors import IntegrityError
from pydantic import BaseModel

from matlinks import config
from matlinks.date_utils import Period, date_range_for_period, format_date_range, generate_date_range, utcnow
from matlinks.db import execute_returning_one, fetch_all, fetch_one
from matlinks.errors import AppError, ErrorKind, not_found

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371000


class CheckInMethod(str, Enum):
    KIOSK = "KIOSK"
    MOBILE = "MOBILE"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


class MembershipCheck(BaseModel):
    is_valid: bool
    has_plan: bool
    is_active: bool
    plan_name: str
    error: Optional[str] = None


class PositionCheck(BaseModel):
    success: bool
    message: Optional[str] = None
    distance_meters: Optional[float] = None
    location_name: Optional[str] = None


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def verify_membership(profile_id: int) -> MembershipCheck:
    row = fetch_one(
        """
        SELECT p.current_plan_id, mp.name AS plan_name, mp.is_active
        FROM profiles p
        LEFT JOIN membership_plans mp ON mp.id = p.current_plan_id
        WHERE p.id = %s
        """,
        (profile_id,),
    )
    if not row:
        return MembershipCheck(
            is_valid=False, has_plan=False, is_active=False, plan_name="Unknown", error="Member not found"
        )
    has_plan = row.get("current_plan_id") is not None
    is_active = bool(row.get("is_active"))
    return MembershipCheck(
        is_valid=has_plan and is_active,
        has_plan=has_plan,
        is_active=is_active,
        plan_name=row.get("plan_name") or "No Plan",
        error=None if has_plan and is_active else "Member does not have an active membership plan.",
    )


def record_check_in(
    profile_id: int,
    location_id: int,
    class_id: Optional[int] = None,
    method: CheckInMethod = CheckInMethod.KIOSK,
    checked_in_at: Optional[datetime] = None,
    client_ref: Optional[str] = None,
) -> dict:
    """
    Record one check-in for a member with an active plan.

    ``created`` is False when ``client_ref`` matches a check-in that was
    already stored, which makes replays of an offline queue harmless.
    """
    membership = verify_membership(profile_id)
    if not membership.is_valid:
        raise AppError(ErrorKind.FORBIDDEN, membership.error or "Member does not have an active membership plan.")

    row = execute_returning_one(
        """
        INSERT INTO check_ins (profile_id, location_id, class_id, checked_in_at, check_in_method, client_ref)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (client_ref) DO NOTHING
        RETURNING id, checked_in_at
        """,
        (
            profile_id,
            location_id,
            class_id,
            checked_in_at or utcnow(),
            CheckInMethod(method).value,
            client_ref,
        ),
    )
    if row:
        logger.info("check-in %s profile=%s location=%s class=%s", row["id"], profile_id, location_id, class_id)
    return {
        "created": row is not None,
        "id": row["id"] if row else None,
        "checked_in_at": row["checked_in_at"] if row else None,
        "plan_name": membership.plan_name,
    }


def verify_position(location_id: int, latitude: float, longitude: float) -> PositionCheck:
    location = fetch_one(
        "SELECT id, name, latitude, longitude, geofence_radius FROM locations WHERE id = %s",
        (location_id,),
    )
    if not location:
        raise not_found("Location")
    if location.get("latitude") is None or location.get("longitude") is None:
        return PositionCheck(
            success=True,
            message="Location verification not configured for this gym",
            location_name=location["name"],
        )

    radius = location.get("geofence_radius") or config.DEFAULT_GEOFENCE_RADIUS_METERS
    distance = haversine_distance(latitude, longitude, float(location["latitude"]), float(location["longitude"]))
    if distance <= radius:
        return PositionCheck(success=True, distance_meters=round(distance), location_name=location["name"])
    return PositionCheck(
        success=False,
        message=f"You appear to be {round(distance)}m away from {location['name']}. Please check in when you arrive.",
        distance_meters=round(distance),
        location_name=location["name"],
    )


def sync_offline_check_ins(items: list[dict]) -> list[dict]:
    """Replay queued kiosk check-ins. Each item gets its own result; one bad item never stops the batch."""
    results = []
    for item in items:
        ref = item.get("client_ref")
        try:
            outcome = record_check_in(
                profile_id=item["profile_id"],
                location_id=item["location_id"],
                class_id=item.get("class_id"),
                method=item.get("check_in_method") or CheckInMethod.KIOSK,
                checked_in_at=item.get("checked_in_at"),
                client_ref=ref,
            )
        except AppError as exc:
            results.append({"client_ref": ref, "status": "error", "error": exc.message})
            continue
        except IntegrityError as exc:
            logger.warning("offline check-in %s rejected: %s", ref, exc)
            results.append({"client_ref": ref, "status": "error", "error": "Invalid check-in data"})
            continue
        results.append(
            {
                "client_ref": ref,
                "status": "created" if outcome["created"] else "duplicate",
                "id": outcome["id"],
            }
        )
    return results


def attendance_summary(period: Period, today=None) -> dict:
    today = today or utcnow().date()
    start, end = date_range_for_period(period, today)
    rows = fetch_all(
        """
        SELECT checked_in_at::date AS day, count(*) AS total
        FROM check_ins
        WHERE checked_in_at::date BETWEEN %s AND %s
        GROUP BY checked_in_at::date
        ORDER BY day
        """,
        (start, end),
    )
    counts = {row["day"]: row["total"] for row in rows}
    days = generate_date_range(start, (end - start).days + 1)
    return {
        "period": period,
        "label": format_date_range(start, end),
        "start": start,
        "end": end,
        "total": sum(counts.values()),
        "days": [{"date": day, "count": counts.get(day, 0)} for day in days],
    }


def recent_check_ins(location_id: Optional[int] = None, limit: int = 50) -> list[dict]:
    return fetch_all(
        """
        SELECT ci.id, ci.profile_id, ci.location_id, ci.class_id, ci.checked_in_at, ci.check_in_method,
               concat_ws(' ', p.first_name, p.last_name) AS member_name
        FROM check_ins ci
        JOIN profiles p ON p.id = ci.profile_id
        WHERE (%s::int IS NULL OR ci.location_id = %s)
        ORDER BY ci.checked_in_at DESC
        LIMIT %s
        """,
        (location_id, location_id, limit),
    )
