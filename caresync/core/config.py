import os
from decimal import Decimal

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./caresync.db")

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:5173"])


DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "30"))
DEFAULT_CONSULTATION_FEE = Decimal(os.getenv("DEFAULT_CONSULTATION_FEE", "0.00"))
MAX_REASON_LENGTH = int(os.getenv("MAX_REASON_LENGTH", "600"))

# Deployments that collect payment up front keep appointments in "scheduled"
# until the fee is settled.
REQUIRE_PREPAYMENT = _get_bool(os.getenv("REQUIRE_PREPAYMENT"), default=False)

JITSI_DOMAIN = os.getenv("JITSI_DOMAIN", "meet.jit.si")
JITSI_APP_ID = os.getenv("JITSI_APP_ID", "")
JITSI_API_KEY = os.getenv("JITSI_API_KEY", "")
JITSI_TOKEN_ALGORITHM = os.getenv("JITSI_TOKEN_ALGORITHM", "HS256")
VIDEO_TOKEN_EXPIRES_MINUTES = int(os.getenv("VIDEO_TOKEN_EXPIRES_MINUTES", "60"))

def validate_runtime_config() -> None:
    if DEFAULT_SLOT_DURATION_MINUTES <= 0:
        raise RuntimeError("DEFAULT_SLOT_DURATION_MINUTES must be positive.")
    if APP_ENV.lower() == "production" and JITSI_APP_ID and not JITSI_API_KEY:
        raise RuntimeError("JITSI_API_KEY must be set in production when JITSI_APP_ID is configured.")
