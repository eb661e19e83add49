import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# --- FIXED CONSTANTS ---
OTP_TTL_SECONDS = 10 * 60
OTP_LENGTH = 6
OTP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

INVITE_CODE_LENGTH = 8
INVITE_CODE_ALPHABET = "0123456789ABCDEF"
INVITE_CODE_ATTEMPTS = 3

SCHEDULER_BATCH_SIZE = 50
PROCESSED_MESSAGE_TTL_SECONDS = 10 * 60


# Values below are read on every call so operators can flip them without a restart.

def database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or None


def scheduler_enabled() -> bool:
    return os.getenv("PAYMENT_CYCLE_CRON_ENABLED", "false").strip().lower() == "true"


def scheduler_interval_seconds() -> int:
    return int(os.getenv("PAYMENT_CYCLE_INTERVAL_SECONDS", "600"))


def phone_number_id() -> str:
    return os.getenv("WHATSAPP_PHONE_NUMBER_ID") or os.getenv("PHONE_NUMBER_ID", "")


def whatsapp_api_version() -> str:
    return os.getenv("WHATSAPP_API_VERSION", "v21.0")


def meta_api_token() -> str:
    return os.getenv("META_API_TOKEN", "")


def whatsapp_verify_token() -> str:
    return os.getenv("WHATSAPP_VERIFY_TOKEN", "")


def whatsapp_app_secret() -> str:
    """
    Meta app secret used to check X-Hub-Signature-256. Empty disables the check.
    """
    return os.getenv("WHATSAPP_APP_SECRET", "")


def payment_header_image_url() -> str:
    return os.getenv("WHATSAPP_IMAGE_PAYMENT", "")


def payment_sticker_url() -> str:
    return os.getenv("WHATSAPP_STICKER_PAYMENT_REQUEST", "")


def main_page_url() -> str:
    return os.getenv("MAIN_PAGE_URL", "")


def payment_backend_url() -> str:
    return os.getenv("PAYMENT_BACKEND_URL", "http://localhost:3000")


def payment_api_key() -> str:
    return os.getenv("PAYMENT_API_KEY", "")


def google_api_key() -> Optional[str]:
    return os.getenv("GOOGLE_API_KEY") or None


def invite_ttl_hours() -> Optional[int]:
    """
    Hours an invitation stays valid. None means invitations never expire.
    """
    value = os.getenv("INVITE_TTL_HOURS")
    return int(value) if value else None
