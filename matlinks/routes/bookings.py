from fastapi import APIRouter, Depends

from matlinks import booking
from matlinks.audit import audit_user_action
from matlinks.auth import Role, require_roles
from matlinks.schemas import BookableClassOut, BookingIn, BookingOut

router = APIRouter(prefix="/bookings", tags=["bookings"])

require_student = require_roles(Role.STUDENT)


@router.get("/classes", response_model=list[BookableClassOut])
def bookable_classes(user: dict = Depends(require_student)):
    member = booking.get_member_for_profile(user["id"])
    return [BookableClassOut.model_validate(row) for row in booking.list_bookable_classes(member)]


@router.get("/mine")
def my_bookings(user: dict = Depends(require_student)):
    member = booking.get_member_for_profile(user["id"])
    return booking.list_member_bookings(member)


@router.post("", response_model=BookingOut, status_code=201)
def book(payload: BookingIn, user: dict = Depends(require_student)):
    member = booking.get_member_for_profile(user["id"])
    row = booking.book_class(member, payload.schedule_id)
    audit_user_action(
        user,
        "booking.create",
        "schedule",
        payload.schedule_id,
        {"booking_id": row["id"], "status": row["status"]},
    )
    return BookingOut.model_validate(row)


@router.post("/{booking_id}/cancel")
def cancel(booking_id: int, user: dict = Depends(require_student)):
    member = booking.get_member_for_profile(user["id"])
    result = booking.cancel_booking(member, booking_id)
    audit_user_action(
        user,
        "booking.cancel",
        "booking",
        booking_id,
        {"promoted_booking_id": result["promoted_booking_id"]},
    )
    return result
