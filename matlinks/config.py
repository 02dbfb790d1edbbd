import os
from pathlib import Path
from urllib.parse import urlparse, parse_qs, unquote

from dotenv import load_dotenv


ROOT_DIR = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent
APP_ENV = os.getenv("APP_ENV", "dev").strip().lower()

_env_variant = {
    "dev": ".env.dev",
    "prod": ".env.prod",
    "cloud": ".env.cloud",
}.get(APP_ENV, ".env")
ENV_FILE_PRIORITY = [
    ROOT_DIR / ".env",
    ROOT_DIR / _env_variant,
]
for env_file in ENV_FILE_PRIORITY:
    # Project env files override machine/user env vars.
    load_dotenv(env_file, override=True)
ENV_FILES_PRESENT = [str(path) for path in ENV_FILE_PRIORITY if path.exists()]


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int_list(value: str) -> list[int]:
    return [int(part) for part in value.split(",") if part.strip()]


_database_url = (os.getenv("DATABASE_URL") or "").strip()


def _db_settings_from_database_url(url: str) -> dict:
    if not url:
        return {}
    parsed = urlparse(url)
    if not parsed.scheme:
        return {}
    query = parse_qs(parsed.query or "")
    sslmode = (query.get("sslmode") or [None])[0]
    return {
        "host": parsed.hostname or "",
        "port": parsed.port or 5432,
        "name": (parsed.path or "").lstrip("/"),
        "user": unquote(parsed.username or ""),
        "password": unquote(parsed.password or ""),
        "sslmode": sslmode or "prefer",
    }


_db_url = _db_settings_from_database_url(_database_url)

DB_HOST = os.getenv("DB_HOST", str(_db_url.get("host") or "localhost"))
DB_PORT = int(os.getenv("DB_PORT", _db_url.get("port") or 5432))
DB_NAME = os.getenv("DB_NAME", str(_db_url.get("name") or "matlinks"))
DB_USER = os.getenv("DB_USER", str(_db_url.get("user") or ""))
DB_PASSWORD = os.getenv("DB_PASSWORD", str(_db_url.get("password") or ""))
DB_SSLMODE = os.getenv("DB_SSLMODE", str(_db_url.get("sslmode") or "prefer"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))

_railway_port = os.getenv("PORT")
API_HOST = os.getenv("API_HOST", "0.0.0.0" if _railway_port else "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", _railway_port or "8000"))
API_TLS_CERTFILE = os.getenv("API_TLS_CERTFILE", "").strip()
API_TLS_KEYFILE = os.getenv("API_TLS_KEYFILE", "").strip()
API_PROXY_HEADERS = _as_bool(os.getenv("API_PROXY_HEADERS", "true"))
API_JWT_SECRET = os.getenv("API_JWT_SECRET", "CHANGE_ME_IN_ENV")
API_JWT_ALGORITHM = "HS256"
API_TOKEN_MINUTES = int(os.getenv("API_TOKEN_MINUTES", "60"))
API_LOGIN_RATE_LIMIT_ATTEMPTS = int(os.getenv("API_LOGIN_RATE_LIMIT_ATTEMPTS", "5"))
API_LOGIN_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("API_LOGIN_RATE_LIMIT_WINDOW_SECONDS", "300"))
API_LOGIN_BLOCK_SECONDS = int(os.getenv("API_LOGIN_BLOCK_SECONDS", "900"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

API_ADMIN_EMAIL = os.getenv("API_ADMIN_EMAIL", "admin@matlinks.local")
API_ADMIN_PASSWORD = os.getenv("API_ADMIN_PASSWORD", "change-me")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CRON_SECRET = os.getenv("CRON_SECRET", "").strip()

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()

SMTP_HOST = os.getenv("SMTP_HOST", "").strip()
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "").strip()
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _as_bool(os.getenv("SMTP_USE_TLS", "true"))
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "noreply@matlinks.com")

DUNNING_RETRY_SCHEDULE = _as_int_list(os.getenv("DUNNING_RETRY_SCHEDULE", "1,3,7"))
DUNNING_CANCELLATION_GRACE_DAYS = int(os.getenv("DUNNING_CANCELLATION_GRACE_DAYS", "7"))
RETRY_PROCESSING_TIMEOUT_MINUTES = int(os.getenv("RETRY_PROCESSING_TIMEOUT_MINUTES", "30"))
BOOKING_WINDOW_DAYS = int(os.getenv("BOOKING_WINDOW_DAYS", "14"))
DEFAULT_GEOFENCE_RADIUS_METERS = int(os.getenv("DEFAULT_GEOFENCE_RADIUS_METERS", "100"))


def validate_security_settings() -> None:
    if APP_ENV not in {"prod", "cloud"}:
        return

    if API_JWT_SECRET == "CHANGE_ME_IN_ENV" or len(API_JWT_SECRET.strip()) < 32:
        raise RuntimeError(
            "Invalid API_JWT_SECRET for production/cloud. Set a strong secret with at least 32 characters."
        )
    if API_ADMIN_PASSWORD == "change-me" or len(API_ADMIN_PASSWORD.strip()) < 12:
        raise RuntimeError(
            "Invalid API_ADMIN_PASSWORD for production/cloud. Set a non-default password with at least 12 characters."
        )
    if len(CRON_SECRET) < 16:
        raise RuntimeError("CRON_SECRET must be set (at least 16 characters) for production/cloud.")
