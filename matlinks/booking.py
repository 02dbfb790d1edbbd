"""Class bookings and the per-schedule waitlist."""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from matlinks import config
from matlinks.date_utils import utcnow
from matlinks.db import fetch_all, fetch_one, transaction
from matlinks.errors import AppError, ErrorKind, ValidationError, not_found

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    WAITLISTED = "WAITLISTED"
    CANCELLED = "CANCELLED"


LIVE_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.WAITLISTED.value)


def get_member_for_profile(profile_id: int) -> dict:
    member = fetch_one(
        """
        SELECT id, profile_id, location_id, membership_plan_id, status
        FROM members
        WHERE profile_id = %s
        """,
        (profile_id,),
    )
    if not member:
        raise AppError(ErrorKind.NOT_FOUND, "Unable to verify your membership. Please contact support.")
    return member


def require_active_member(member: dict) -> None:
    if member.get("status") != "ACTIVE":
        raise AppError(
            ErrorKind.FORBIDDEN,
            "Your membership is not active. Please update your membership to book classes.",
        )


def decide_booking_status(
    max_capacity: Optional[int], confirmed: int, last_waitlist_position: int
) -> tuple[BookingStatus, Optional[int]]:
    """Confirm while there is room, otherwise join the end of the waitlist. No capacity means unlimited."""
    if max_capacity is None or confirmed < max_capacity:
        return BookingStatus.CONFIRMED, None
    return BookingStatus.WAITLISTED, (last_waitlist_position or 0) + 1


def spots_remaining(max_capacity: Optional[int], confirmed: int) -> Optional[int]:
    if max_capacity is None:
        return None
    return max(max_capacity - confirmed, 0)


def list_bookable_classes(member: dict, now: Optional[datetime] = None, window_days: Optional[int] = None) -> list[dict]:
    require_active_member(member)
    now = now or utcnow()
    window_end = now + timedelta(days=window_days or config.BOOKING_WINDOW_DAYS)
    rows = fetch_all(
        """
        SELECT s.id AS schedule_id,
               c.name AS class_name,
               COALESCE(ct.name, 'General') AS class_type_name,
               l.name AS location_name,
               s.start_time,
               s.end_time,
               NULLIF(concat_ws(' ', ip.first_name, ip.last_name), '') AS instructor_name,
               c.max_capacity,
               (
                   SELECT count(*)
                   FROM class_bookings cb
                   WHERE cb.class_schedule_id = s.id AND cb.status = 'CONFIRMED'
               ) AS confirmed,
               mb.id AS booking_id,
               mb.status AS booking_status,
               mb.waitlist_position
        FROM class_schedules s
        JOIN classes c ON c.id = s.class_id
        LEFT JOIN class_types ct ON ct.id = c.class_type_id
        LEFT JOIN locations l ON l.id = s.location_id
        LEFT JOIN profiles ip ON ip.id = s.instructor_id
        LEFT JOIN class_bookings mb ON mb.class_schedule_id = s.id AND mb.member_id = %s
        WHERE s.active = true
          AND c.requires_booking = true
          AND s.start_time >= %s
          AND s.start_time <= %s
        ORDER BY s.start_time
        """,
        (member["id"], now, window_end),
    )
    return [
        {
            "schedule_id": row["schedule_id"],
            "class_name": row["class_name"],
            "class_type_name": row["class_type_name"],
            "location_name": row["location_name"],
            "start_time": row["start_time"],
            "end_time": row["end_time"],
            "instructor_name": row["instructor_name"],
            "max_capacity": row["max_capacity"],
            "spots_remaining": spots_remaining(row["max_capacity"], row["confirmed"]),
            "user_booking_status": row["booking_status"] or "NONE",
            "waitlist_position": row["waitlist_position"],
            "booking_id": row["booking_id"],
        }
        for row in rows
    ]


def book_class(member: dict, schedule_id: int, now: Optional[datetime] = None) -> dict:
    """
    Book a schedule for a member.

    The schedule row is locked for the whole transaction, so two members
    racing for the last spot are serialized and the loser is waitlisted.
    """
    require_active_member(member)
    now = now or utcnow()
    with transaction() as cur:
        cur.execute(
            """
            SELECT s.id, s.active, c.requires_booking, c.max_capacity
            FROM class_schedules s
            JOIN classes c ON c.id = s.class_id
            WHERE s.id = %s
            FOR UPDATE OF s
            """,
            (schedule_id,),
        )
        schedule = cur.fetchone()
        if not schedule or not schedule["active"]:
            raise AppError(ErrorKind.NOT_FOUND, "Class not found or unavailable")
        if not schedule["requires_booking"]:
            raise ValidationError("This class does not require booking")

        cur.execute(
            """
            SELECT id, status
            FROM class_bookings
            WHERE member_id = %s AND class_schedule_id = %s
            """,
            (member["id"], schedule_id),
        )
        existing = cur.fetchone()
        if existing and existing["status"] in LIVE_STATUSES:
            raise AppError(ErrorKind.CONFLICT, "You have already booked this class")

        cur.execute(
            """
            SELECT count(*) FILTER (WHERE status = 'CONFIRMED') AS confirmed,
                   COALESCE(MAX(waitlist_position) FILTER (WHERE status = 'WAITLISTED'), 0) AS last_position
            FROM class_bookings
            WHERE class_schedule_id = %s
            """,
            (schedule_id,),
        )
        counts = cur.fetchone()
        booking_status, position = decide_booking_status(
            schedule["max_capacity"], counts["confirmed"], counts["last_position"]
        )

        if existing:
            cur.execute(
                """
                UPDATE class_bookings
                SET status = %s, waitlist_position = %s, updated_at = %s
                WHERE id = %s
                RETURNING id, member_id, class_schedule_id, status, waitlist_position, created_at
                """,
                (booking_status.value, position, now, existing["id"]),
            )
        else:
            cur.execute(
                """
                INSERT INTO class_bookings (
                    member_id, class_schedule_id, status, waitlist_position, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, member_id, class_schedule_id, status, waitlist_position, created_at
                """,
                (member["id"], schedule_id, booking_status.value, position, now, now),
            )
        booking = cur.fetchone()

    logger.info(
        "booking %s member=%s schedule=%s status=%s",
        booking["id"],
        member["id"],
        schedule_id,
        booking_status.value,
    )
    return {**booking, "is_waitlisted": booking_status == BookingStatus.WAITLISTED}


def _promote_first_waitlisted(cur, schedule_id: int, now: datetime) -> Optional[int]:
    cur.execute(
        """
        SELECT id, waitlist_position
        FROM class_bookings
        WHERE class_schedule_id = %s AND status = 'WAITLISTED'
        ORDER BY waitlist_position
        LIMIT 1
        """,
        (schedule_id,),
    )
    first = cur.fetchone()
    if not first:
        return None
    cur.execute(
        """
        UPDATE class_bookings
        SET status = 'CONFIRMED', waitlist_position = NULL, updated_at = %s
        WHERE id = %s
        """,
        (now, first["id"]),
    )
    _close_waitlist_gap(cur, schedule_id, first["waitlist_position"], now)
    return first["id"]


def _close_waitlist_gap(cur, schedule_id: int, position: int, now: datetime) -> None:
    cur.execute(
        """
        UPDATE class_bookings
        SET waitlist_position = waitlist_position - 1, updated_at = %s
        WHERE class_schedule_id = %s
          AND status = 'WAITLISTED'
          AND waitlist_position > %s
        """,
        (now, schedule_id, position),
    )


def cancel_booking(member: dict, booking_id: int, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    promoted_id = None
    with transaction() as cur:
        cur.execute(
            """
            SELECT id, member_id, class_schedule_id, status, waitlist_position
            FROM class_bookings
            WHERE id = %s
            """,
            (booking_id,),
        )
        booking = cur.fetchone()
        if not booking:
            raise not_found("Booking")
        if booking["member_id"] != member["id"]:
            raise AppError(ErrorKind.FORBIDDEN, "You do not have permission to cancel this booking")
        if booking["status"] == BookingStatus.CANCELLED.value:
            raise AppError(ErrorKind.CONFLICT, "Booking is already cancelled")

        schedule_id = booking["class_schedule_id"]
        cur.execute("SELECT id FROM class_schedules WHERE id = %s FOR UPDATE", (schedule_id,))
        cur.execute(
            """
            UPDATE class_bookings
            SET status = 'CANCELLED', waitlist_position = NULL, updated_at = %s
            WHERE id = %s
            """,
            (now, booking_id),
        )
        if booking["status"] == BookingStatus.WAITLISTED.value and booking["waitlist_position"]:
            _close_waitlist_gap(cur, schedule_id, booking["waitlist_position"], now)
        elif booking["status"] == BookingStatus.CONFIRMED.value:
            promoted_id = _promote_first_waitlisted(cur, schedule_id, now)

    if promoted_id:
        logger.info("booking %s promoted from waitlist on schedule %s", promoted_id, schedule_id)
    return {"status": "ok", "id": booking_id, "promoted_booking_id": promoted_id}


def list_member_bookings(member: dict) -> list[dict]:
    return fetch_all(
        """
        SELECT cb.id, cb.class_schedule_id, cb.status, cb.waitlist_position,
               s.start_time, s.end_time, c.name AS class_name
        FROM class_bookings cb
        JOIN class_schedules s ON s.id = cb.class_schedule_id
        JOIN classes c ON c.id = s.class_id
        WHERE cb.member_id = %s
        ORDER BY s.start_time DESC
        """,
        (member["id"],),
    )
