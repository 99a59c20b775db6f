import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

PLATFORM_FEE_RATIO = Decimal(os.getenv("PLATFORM_FEE_RATIO", "0.5"))
if not Decimal("0") <= PLATFORM_FEE_RATIO <= Decimal("1"):
    raise RuntimeError("PLATFORM_FEE_RATIO must be between 0 and 1.")

SETTLEMENT_HOLD_DAYS = int(os.getenv("SETTLEMENT_HOLD_DAYS", "7"))
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "5000"))
SYNC_WINDOW_HOURS = int(os.getenv("SYNC_WINDOW_HOURS", "24"))
MAX_FAILED_PAYMENTS = int(os.getenv("MAX_FAILED_PAYMENTS", "3"))


def provider_secret(name: str):
    """Read a provider key at call time so rotated secrets apply without a restart."""
    return os.getenv(name)
