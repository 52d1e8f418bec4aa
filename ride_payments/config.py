import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_STRIPE_API_VERSION = "2025-02-24.acacia"

_TRUE_FLAGS = {"true", "1", "yes", "on", "sandbox"}
_FALSE_FLAGS = {"false", "0", "no", "off", "live", "production", "prod"}


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def parse_flag(value: str | None) -> bool | None:
    """Interpret a loose boolean env flag; None when unset or unrecognised."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in _TRUE_FLAGS:
        return True
    if normalized in _FALSE_FLAGS:
        return False
    return None


def database_url() -> str:
    return env("DATABASE_URL", "sqlite:///./ride_payments.db")


def stripe_secret_key() -> str | None:
    return env("STRIPE_SECRET_KEY")


def stripe_api_version() -> str:
    return env("STRIPE_API_VERSION", DEFAULT_STRIPE_API_VERSION)


def stripe_webhook_secret() -> str | None:
    return env("STRIPE_WEBHOOK_SECRET")


def connect_country() -> str:
    return env("STRIPE_CONNECT_COUNTRY", "CA")


def payout_currency() -> str:
    return env("STRIPE_PAYOUT_CURRENCY", "cad").lower()


def payout_method() -> str:
    return env("STRIPE_PAYOUT_METHOD", "instant")


def connect_refresh_url() -> str | None:
    return env("CONNECT_REFRESH_URL")


def connect_return_url() -> str | None:
    return env("CONNECT_RETURN_URL")


def jwt_secret() -> str | None:
    return env("SUPABASE_JWT_SECRET") or env("JWT_SECRET")


def jwt_audience() -> str | None:
    # An explicitly empty JWT_AUDIENCE turns the audience check off
    if os.getenv("JWT_AUDIENCE") is not None:
        return env("JWT_AUDIENCE")
    return "authenticated"


def paypal_client_id() -> str | None:
    return env("PAYPAL_CLIENT_ID") or env("VITE_PAYPAL_CLIENT_ID")


def paypal_client_secret() -> str | None:
    return env("PAYPAL_CLIENT_SECRET")


def paypal_sandbox() -> bool:
    preference = parse_flag(os.getenv("PAYPAL_SANDBOX_MODE"))
    if preference is None:
        preference = parse_flag(os.getenv("VITE_PAYPAL_SANDBOX_MODE"))
    return preference is None or preference


def log_level() -> str:
    return env("LOG_LEVEL", "INFO").upper()


def log_json() -> bool:
    return bool(parse_flag(os.getenv("LOG_JSON")))


def cors_origins() -> list[str]:
    raw = env("CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def app_name() -> str:
    return env("APP_NAME", "Ride Payments API")
