from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from matlinks.errors import ErrorKind
from matlinks.schemas import (
    CheckInSyncIn,
    LocationIn,
    MembershipPlanIn,
    PositionIn,
    ProfileCreateIn,
    PromotionIn,
    RecurringScheduleIn,
)
from matlinks.validation import (
    ValidationError,
    validate_coordinates,
    validate_date_range,
    validate_discount,
    validate_email,
    validate_hex_color,
    validate_optional_email,
    validate_required,
    validate_time_range,
)


# ---------------------------
# Validation helper tests
# ---------------------------
def test_validate_required_ok():
    validate_required("Ana", "Name")


def test_validate_required_empty():
    with pytest.raises(ValidationError) as exc:
        validate_required("  ", "Name")
    assert exc.value.kind == ErrorKind.VALIDATION
    assert exc.value.status_code == 422


def test_validate_email():
    validate_email("test@example.com")
    with pytest.raises(ValidationError):
        validate_email("not-an-email")


def test_validate_optional_email_allows_blank():
    validate_optional_email("")
    validate_optional_email(None)
    with pytest.raises(ValidationError):
        validate_optional_email("broken@")


def test_validate_hex_color():
    validate_hex_color("#1A2B3C")
    validate_hex_color(None)
    with pytest.raises(ValidationError):
        validate_hex_color("blue", "Rank color")


def test_validate_time_range():
    start = datetime(2024, 6, 1, 18, 0, tzinfo=timezone.utc)
    validate_time_range(start, start + timedelta(hours=1))
    with pytest.raises(ValidationError):
        validate_time_range(start, start)


def test_validate_date_range():
    validate_date_range(date(2024, 1, 1), None)
    validate_date_range(date(2024, 1, 1), date(2024, 1, 1))
    with pytest.raises(ValidationError):
        validate_date_range(date(2024, 1, 2), date(2024, 1, 1))


def test_validate_coordinates():
    validate_coordinates(None, None)
    validate_coordinates(48.2, 16.37)
    with pytest.raises(ValidationError):
        validate_coordinates(48.2, None)
    with pytest.raises(ValidationError):
        validate_coordinates(91, 0)


def test_validate_discount():
    validate_discount("percentage", Decimal("100"))
    validate_discount("fixed", Decimal("250"))
    with pytest.raises(ValidationError):
        validate_discount("percentage", Decimal("101"))
    with pytest.raises(ValidationError):
        validate_discount("fixed", 0)


# ---------------------------
# API schema validation tests
# ---------------------------
def test_profile_create_defaults_to_student():
    payload = ProfileCreateIn(email="ana@example.com", password="StrongPwd123", first_name="Ana")
    assert payload.role.value == "student"


def test_profile_create_rejects_short_password_and_unknown_role():
    with pytest.raises(PydanticValidationError):
        ProfileCreateIn(email="ana@example.com", password="short", first_name="Ana")
    with pytest.raises(PydanticValidationError):
        ProfileCreateIn(email="ana@example.com", password="StrongPwd123", first_name="Ana", role="superuser")


def test_location_geofence_bounds():
    LocationIn(gym_id=1, name="HQ", geofence_radius=100)
    with pytest.raises(PydanticValidationError):
        LocationIn(gym_id=1, name="HQ", geofence_radius=5)


def test_membership_plan_rejects_negative_price():
    with pytest.raises(PydanticValidationError):
        MembershipPlanIn(name="Unlimited", price=Decimal("-1"))


def test_promotion_requires_known_discount_type():
    with pytest.raises(PydanticValidationError):
        PromotionIn(code="SUMMER", discount_type="bogo", discount_value=Decimal("10"))


def test_recurring_schedule_requires_weekdays():
    with pytest.raises(PydanticValidationError):
        RecurringScheduleIn(
            class_id=1,
            weekdays=[],
            start_time=time(18, 0),
            end_time=time(19, 0),
            start_date=date(2024, 6, 1),
            end_date=date(2024, 6, 30),
        )


def test_check_in_sync_requires_items():
    with pytest.raises(PydanticValidationError):
        CheckInSyncIn(items=[])
    payload = CheckInSyncIn(items=[{"profile_id": 1, "location_id": 2, "client_ref": "offline_1_abc"}])
    assert payload.items[0].check_in_method.value == "KIOSK"


def test_position_bounds():
    with pytest.raises(PydanticValidationError):
        PositionIn(location_id=1, latitude=100, longitude=0)
