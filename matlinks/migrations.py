import logging

from matlinks.config import API_ADMIN_EMAIL, API_ADMIN_PASSWORD
from matlinks.db import execute
from matlinks.security import hash_password

logger = logging.getLogger(__name__)

# Statements are idempotent and run in order on every startup.
SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS gyms (
        id serial PRIMARY KEY,
        name varchar(120) NOT NULL,
        description text,
        email varchar(160),
        phone varchar(50),
        website varchar(200),
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership_plans (
        id serial PRIMARY KEY,
        gym_id integer REFERENCES gyms(id),
        name varchar(120) NOT NULL,
        description text,
        price numeric(10, 2) NOT NULL DEFAULT 0 CHECK (price >= 0),
        billing_interval varchar(20) NOT NULL DEFAULT 'month',
        class_limit integer,
        stripe_price_id varchar(120),
        is_active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id serial PRIMARY KEY,
        email varchar(160) NOT NULL,
        password_hash text,
        first_name varchar(80),
        last_name varchar(80),
        phone varchar(50),
        role varchar(20) NOT NULL DEFAULT 'student'
            CHECK (role IN ('admin', 'owner', 'instructor', 'student')),
        current_plan_id integer REFERENCES membership_plans(id),
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz,
        CONSTRAINT profiles_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS locations (
        id serial PRIMARY KEY,
        gym_id integer NOT NULL REFERENCES gyms(id),
        name varchar(120) NOT NULL,
        address text,
        phone varchar(50),
        email varchar(160),
        latitude numeric(9, 6),
        longitude numeric(9, 6),
        geofence_radius integer,
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS class_types (
        id serial PRIMARY KEY,
        name varchar(80) NOT NULL UNIQUE,
        description text,
        color varchar(7),
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS classes (
        id serial PRIMARY KEY,
        name varchar(120) NOT NULL,
        description text,
        class_type_id integer REFERENCES class_types(id),
        location_id integer REFERENCES locations(id),
        instructor_id integer REFERENCES profiles(id),
        max_capacity integer CHECK (max_capacity IS NULL OR max_capacity >= 1),
        requires_booking boolean NOT NULL DEFAULT false,
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS class_schedules (
        id serial PRIMARY KEY,
        class_id integer NOT NULL REFERENCES classes(id),
        location_id integer REFERENCES locations(id),
        instructor_id integer REFERENCES profiles(id),
        start_time timestamptz NOT NULL,
        end_time timestamptz NOT NULL,
        notes text,
        active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz,
        CHECK (start_time < end_time)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ranks (
        id serial PRIMARY KEY,
        name varchar(80) NOT NULL UNIQUE,
        color varchar(7),
        display_order integer NOT NULL DEFAULT 0,
        description text,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id serial PRIMARY KEY,
        profile_id integer NOT NULL UNIQUE REFERENCES profiles(id),
        location_id integer REFERENCES locations(id),
        membership_plan_id integer REFERENCES membership_plans(id),
        current_rank_id integer REFERENCES ranks(id),
        status varchar(20) NOT NULL DEFAULT 'ACTIVE',
        join_date date NOT NULL DEFAULT current_date,
        notes text,
        stripe_customer_id varchar(120) UNIQUE,
        stripe_subscription_id varchar(120),
        subscription_status varchar(30),
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rank_progressions (
        id serial PRIMARY KEY,
        member_id integer NOT NULL REFERENCES members(id),
        from_rank_id integer REFERENCES ranks(id),
        to_rank_id integer NOT NULL REFERENCES ranks(id),
        promoted_by integer REFERENCES profiles(id),
        promoted_at timestamptz NOT NULL DEFAULT now(),
        notes text
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS class_bookings (
        id serial PRIMARY KEY,
        member_id integer NOT NULL REFERENCES members(id),
        class_schedule_id integer NOT NULL REFERENCES class_schedules(id),
        status varchar(20) NOT NULL CHECK (status IN ('CONFIRMED', 'WAITLISTED', 'CANCELLED')),
        waitlist_position integer,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz,
        CONSTRAINT class_bookings_member_schedule_key UNIQUE (member_id, class_schedule_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS check_ins (
        id serial PRIMARY KEY,
        profile_id integer NOT NULL REFERENCES profiles(id),
        location_id integer NOT NULL REFERENCES locations(id),
        class_id integer REFERENCES classes(id),
        checked_in_at timestamptz NOT NULL DEFAULT now(),
        check_in_method varchar(20) NOT NULL DEFAULT 'KIOSK',
        client_ref varchar(80) UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS failed_payments (
        id varchar(120) PRIMARY KEY,
        user_id integer NOT NULL REFERENCES profiles(id),
        amount integer NOT NULL,
        currency varchar(3) NOT NULL,
        failure_date timestamptz NOT NULL,
        failure_type varchar(30) NOT NULL,
        failure_message text NOT NULL,
        payment_method varchar(120) NOT NULL,
        retry_attempts jsonb NOT NULL DEFAULT '[]'::jsonb,
        subscription_id varchar(120),
        invoice_id varchar(120),
        max_retries integer NOT NULL,
        resolved_at timestamptz,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dunning_notifications (
        id serial PRIMARY KEY,
        user_id integer NOT NULL REFERENCES profiles(id),
        payment_id varchar(120) NOT NULL REFERENCES failed_payments(id),
        stage varchar(30) NOT NULL,
        scheduled_date timestamptz NOT NULL,
        sent_date timestamptz,
        status varchar(20) NOT NULL DEFAULT 'pending',
        failure_type varchar(30),
        amount integer NOT NULL DEFAULT 0,
        currency varchar(3) NOT NULL DEFAULT 'usd',
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS dunning_notifications_due_idx
    ON dunning_notifications (status, scheduled_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_subscription_cancellations (
        id serial PRIMARY KEY,
        user_id integer NOT NULL REFERENCES profiles(id),
        subscription_id varchar(120),
        payment_id varchar(120) REFERENCES failed_payments(id),
        scheduled_date timestamptz NOT NULL,
        processed boolean NOT NULL DEFAULT false,
        processed_date timestamptz,
        voided boolean NOT NULL DEFAULT false,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription_cancellations (
        id serial PRIMARY KEY,
        user_id integer NOT NULL REFERENCES profiles(id),
        subscription_id varchar(120) NOT NULL,
        reason text,
        canceled_at timestamptz NOT NULL DEFAULT now(),
        effective_date timestamptz,
        immediate boolean NOT NULL DEFAULT false
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_history (
        id serial PRIMARY KEY,
        user_id integer REFERENCES profiles(id),
        stripe_invoice_id varchar(120) UNIQUE,
        stripe_payment_intent_id varchar(120),
        amount integer NOT NULL,
        currency varchar(3) NOT NULL,
        status varchar(30) NOT NULL,
        description text,
        paid_at timestamptz,
        created_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS promotions (
        id serial PRIMARY KEY,
        code varchar(40) NOT NULL UNIQUE,
        description text,
        discount_type varchar(20) NOT NULL CHECK (discount_type IN ('percentage', 'fixed')),
        discount_value numeric(10, 2) NOT NULL CHECK (discount_value > 0),
        start_date date,
        end_date date,
        max_uses integer,
        current_uses integer NOT NULL DEFAULT 0,
        is_active boolean NOT NULL DEFAULT true,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS promotion_redemptions (
        id serial PRIMARY KEY,
        promotion_id integer NOT NULL REFERENCES promotions(id),
        user_id integer NOT NULL REFERENCES profiles(id),
        order_ref varchar(120),
        redeemed_at timestamptz NOT NULL DEFAULT now(),
        CONSTRAINT promotion_redemptions_user_key UNIQUE (promotion_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id bigserial PRIMARY KEY,
        actor_user_id integer,
        actor_email varchar(160),
        actor_role varchar(20),
        action varchar(80) NOT NULL,
        resource_type varchar(60),
        resource_id varchar(120),
        result varchar(20) NOT NULL,
        ip_address varchar(64),
        correlation_id varchar(120),
        details jsonb NOT NULL DEFAULT '{}'::jsonb,
        created_at timestamptz NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE audit_log ADD COLUMN IF NOT EXISTS actor_role varchar(20)",
)


def apply_migrations() -> None:
    for statement in SCHEMA:
        execute(statement)
    execute(
        """
        INSERT INTO profiles (email, password_hash, first_name, last_name, role, active)
        VALUES (%s, %s, 'Admin', NULL, 'admin', TRUE)
        ON CONFLICT (email) DO UPDATE
        SET role = 'admin',
            active = TRUE,
            updated_at = now()
        """,
        (
            API_ADMIN_EMAIL.strip().lower(),
            hash_password(API_ADMIN_PASSWORD),
        ),
    )
    logger.info("schema ready (%s statements)", len(SCHEMA))
