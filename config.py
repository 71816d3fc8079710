import os
from decimal import Decimal


def _env_bool(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# every checkout goes through approval regardless of the item flag
ALWAYS_REQUIRE_APPROVAL = _env_bool("ALWAYS_REQUIRE_APPROVAL")

LATE_FEE_PER_DAY = Decimal(os.getenv("LATE_FEE_PER_DAY") or "5")
LATE_FEE_CURRENCY = os.getenv("LATE_FEE_CURRENCY") or "USD"

# 0 disables the background sweep; overdue is still computed on every read
OVERDUE_SWEEP_SECONDS = int(os.getenv("OVERDUE_SWEEP_SECONDS") or "3600")

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1:3000,http://localhost:3000",
)
