from datetime import date, datetime
import re

from matlinks.errors import ValidationError


_EMAIL_PATTERN = r"^[^@]+@[^@]+\.[^@]+$"
_HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def validate_required(value, field_name):
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field_name} is required")


def validate_email(email):
    validate_required(email, "Email")
    if not re.match(_EMAIL_PATTERN, email):
        raise ValidationError("Invalid email format")


def validate_optional_email(email):
    if email is None or str(email).strip() == "":
        return
    validate_email(email)


def validate_hex_color(color, field_name="Color"):
    if color is None or color == "":
        return
    if not re.match(_HEX_COLOR_PATTERN, color):
        raise ValidationError(f"{field_name} must be a hex color like #1A2B3C")


def validate_time_range(start: datetime, end: datetime):
    if start >= end:
        raise ValidationError("End time must be after start time")


def validate_date_range(start: date | None, end: date | None):
    if start is None or end is None:
        return
    if end < start:
        raise ValidationError("End date cannot be before start date")


def validate_coordinates(latitude, longitude):
    if latitude is None and longitude is None:
        return
    if latitude is None or longitude is None:
        raise ValidationError("Latitude and longitude must be set together")
    if not -90 <= float(latitude) <= 90:
        raise ValidationError("Latitude must be between -90 and 90")
    if not -180 <= float(longitude) <= 180:
        raise ValidationError("Longitude must be between -180 and 180")


def validate_discount(discount_type: str, discount_value):
    if discount_value is None or float(discount_value) <= 0:
        raise ValidationError("Discount value must be greater than zero")
    if discount_type == "percentage" and float(discount_value) > 100:
        raise ValidationError("Percentage discount cannot exceed 100")
