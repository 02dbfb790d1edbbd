from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from matlinks.auth import Role
from matlinks.checkins import CheckInMethod

BillingInterval = Literal["month", "year", "one_time"]
DiscountType = Literal["percentage", "fixed"]
MemberStatus = Literal["ACTIVE", "INACTIVE", "SUSPENDED"]


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in_minutes: int
    email: str
    role: Role


class AuthUserOut(BaseModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    active: bool

    model_config = ConfigDict(from_attributes=True)


class ProfileCreateIn(BaseModel):
    email: str = Field(min_length=3, max_length=160)
    password: str = Field(min_length=10, max_length=256)
    first_name: str = Field(min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, max_length=80)
    phone: Optional[str] = None
    role: Role = Role.STUDENT


class ProfileUpdateIn(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, max_length=80)
    phone: Optional[str] = None
    role: Optional[Role] = None
    active: Optional[bool] = None
    new_password: Optional[str] = Field(default=None, min_length=10, max_length=256)


class ProfileOut(BaseModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Role
    active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GymIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None


class GymOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    active: bool
    location_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class LocationIn(BaseModel):
    gym_id: int
    name: str = Field(min_length=1, max_length=120)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geofence_radius: Optional[int] = Field(default=None, ge=10, le=5000)


class LocationOut(BaseModel):
    id: int
    gym_id: int
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geofence_radius: Optional[int] = None
    active: bool

    model_config = ConfigDict(from_attributes=True)


class ClassTypeIn(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    description: Optional[str] = None
    color: Optional[str] = None


class ClassTypeOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    active: bool

    model_config = ConfigDict(from_attributes=True)


class ClassIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    class_type_id: Optional[int] = None
    location_id: Optional[int] = None
    instructor_id: Optional[int] = None
    max_capacity: Optional[int] = Field(default=None, ge=1)
    requires_booking: bool = False


class ClassOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    class_type_id: Optional[int] = None
    class_type_name: Optional[str] = None
    location_id: Optional[int] = None
    instructor_id: Optional[int] = None
    max_capacity: Optional[int] = None
    requires_booking: bool
    active: bool

    model_config = ConfigDict(from_attributes=True)


class ScheduleIn(BaseModel):
    class_id: int
    location_id: Optional[int] = None
    instructor_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None


class RecurringScheduleIn(BaseModel):
    class_id: int
    location_id: Optional[int] = None
    instructor_id: Optional[int] = None
    weekdays: list[int] = Field(min_length=1, description="0 = Monday ... 6 = Sunday")
    start_time: time
    end_time: time
    start_date: date
    end_date: date


class ScheduleOut(BaseModel):
    id: int
    class_id: int
    class_name: Optional[str] = None
    location_id: Optional[int] = None
    instructor_id: Optional[int] = None
    instructor_name: Optional[str] = None
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None
    active: bool

    model_config = ConfigDict(from_attributes=True)


class MemberCreateIn(BaseModel):
    profile_id: int
    location_id: Optional[int] = None
    membership_plan_id: Optional[int] = None
    current_rank_id: Optional[int] = None
    status: MemberStatus = "ACTIVE"
    notes: Optional[str] = None


class MemberUpdateIn(BaseModel):
    location_id: Optional[int] = None
    membership_plan_id: Optional[int] = None
    status: Optional[MemberStatus] = None
    notes: Optional[str] = None


class MemberOut(BaseModel):
    id: int
    profile_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    location_id: Optional[int] = None
    membership_plan_id: Optional[int] = None
    plan_name: Optional[str] = None
    current_rank_id: Optional[int] = None
    rank_name: Optional[str] = None
    status: str
    join_date: date
    subscription_status: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RankIn(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    color: Optional[str] = None
    display_order: int = 0
    description: Optional[str] = None


class RankOut(BaseModel):
    id: int
    name: str
    color: Optional[str] = None
    display_order: int
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PromoteMemberIn(BaseModel):
    to_rank_id: int
    notes: Optional[str] = None


class RankProgressionOut(BaseModel):
    id: int
    member_id: int
    member_name: Optional[str] = None
    from_rank_id: Optional[int] = None
    from_rank_name: Optional[str] = None
    to_rank_id: int
    to_rank_name: Optional[str] = None
    promoted_by: Optional[int] = None
    promoted_at: datetime
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MembershipPlanIn(BaseModel):
    gym_id: Optional[int] = None
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    billing_interval: BillingInterval = "month"
    class_limit: Optional[int] = Field(default=None, ge=1)
    stripe_price_id: Optional[str] = None


class MembershipPlanOut(BaseModel):
    id: int
    gym_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    price: Decimal
    billing_interval: str
    class_limit: Optional[int] = None
    stripe_price_id: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PromotionIn(BaseModel):
    code: str = Field(min_length=3, max_length=40)
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_uses: Optional[int] = Field(default=None, ge=1)


class PromotionOut(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    max_uses: Optional[int] = None
    current_uses: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PromotionCodeIn(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    order_ref: Optional[str] = Field(default=None, max_length=120)


class BookableClassOut(BaseModel):
    schedule_id: int
    class_name: str
    class_type_name: str
    location_name: Optional[str] = None
    start_time: datetime
    end_time: datetime
    instructor_name: Optional[str] = None
    max_capacity: Optional[int] = None
    spots_remaining: Optional[int] = None
    user_booking_status: Literal["NONE", "CONFIRMED", "WAITLISTED", "CANCELLED"]
    waitlist_position: Optional[int] = None
    booking_id: Optional[int] = None


class BookingIn(BaseModel):
    schedule_id: int


class BookingOut(BaseModel):
    id: int
    member_id: int
    class_schedule_id: int
    status: str
    waitlist_position: Optional[int] = None
    is_waitlisted: bool

    model_config = ConfigDict(from_attributes=True)


class CheckInIn(BaseModel):
    profile_id: int
    location_id: int
    class_id: Optional[int] = None
    check_in_method: CheckInMethod = CheckInMethod.KIOSK
    checked_in_at: Optional[datetime] = None
    client_ref: Optional[str] = Field(default=None, max_length=80)


class CheckInSyncIn(BaseModel):
    items: list[CheckInIn] = Field(min_length=1, max_length=500)


class CheckInSyncResult(BaseModel):
    client_ref: Optional[str] = None
    status: Literal["created", "duplicate", "error"]
    id: Optional[int] = None
    error: Optional[str] = None


class CheckInSyncOut(BaseModel):
    total: int
    created: int
    duplicates: int
    errors: int
    results: list[CheckInSyncResult]


class PositionIn(BaseModel):
    location_id: int
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class CancelSubscriptionIn(BaseModel):
    reason: str = Field(default="Requested by member", max_length=300)
    at_period_end: bool = True


class ChangePlanIn(BaseModel):
    membership_plan_id: int


class CheckoutIn(BaseModel):
    membership_plan_id: int
    promotion_code: Optional[str] = None
