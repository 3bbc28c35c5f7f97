# services/config.py
from __future__ import annotations
import os

# ------------------------------------------------------------------------------
# Helper: get env var with fallback
# ------------------------------------------------------------------------------
def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return v if v is not None and v != "" else default

# ------------------------------------------------------------------------------
# Database
# ------------------------------------------------------------------------------
DB_URL: str = _env("DB_URL", "sqlite://./db.sqlite3")

# ------------------------------------------------------------------------------
# Reading retrieval
# ------------------------------------------------------------------------------
# Page size for the ordered reading scan; a short page means end-of-data.
READING_PAGE_SIZE: int = int(_env("READING_PAGE_SIZE", "1000"))

# Pause between periods of a bulk job (seconds)
PERIOD_DELAY_SECONDS: float = float(_env("PERIOD_DELAY_SECONDS", "0.5"))

# ------------------------------------------------------------------------------
# Corruption thresholds (per 30-min reading). Fixed, not learned.
# ------------------------------------------------------------------------------
MAX_KWH_PER_READING: float = 10_000.0
MAX_KVA_PER_READING: float = 50_000.0
MAX_METADATA_VALUE: float = 100_000.0

# ------------------------------------------------------------------------------
# Tariffs
# ------------------------------------------------------------------------------
# High-demand (winter) months, comma-separated env -> set
HIGH_SEASON_MONTHS: frozenset[int] = frozenset(
    int(m) for m in _env("HIGH_SEASON_MONTHS", "6,7,8").split(",") if m.strip()
)

# ------------------------------------------------------------------------------
# Reconciliation guards
# ------------------------------------------------------------------------------
RECOVERY_RATE_BOUND: float = float(_env("RECOVERY_RATE_BOUND", "1000"))
TOTAL_SANITY_BOUND: float = float(_env("TOTAL_SANITY_BOUND", "1e12"))

# ------------------------------------------------------------------------------
# HTTP
# ------------------------------------------------------------------------------
CORS_ORIGINS: list[str] = [
    o.strip() for o in _env("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()
]
