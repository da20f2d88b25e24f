"""Configuration for Realm Tracker."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _parse_int(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        return int(value.strip().replace("_", ""))
    except ValueError:
        return default


def _parse_names(value: str) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'realm.db'}",
)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Ingestion
INGEST_BATCH_SIZE = max(1, _parse_int(os.getenv("INGEST_BATCH_SIZE"), 20))
INGEST_BATCH_TIMEOUT_SECONDS = _parse_int(os.getenv("INGEST_BATCH_TIMEOUT_SECONDS"), 30)
MAX_UPLOAD_BYTES = _parse_int(os.getenv("MAX_UPLOAD_BYTES"), 50 * 1024 * 1024)
# Worksheet names tried after the kingdom id, before falling back to the third sheet
FALLBACK_SHEET_NAMES = _parse_names(os.getenv("FALLBACK_SHEET_NAMES", "671,Data"))

# Departure inference
LEFT_REALM_CUTOFF_DAYS = _parse_int(os.getenv("LEFT_REALM_CUTOFF_DAYS"), 7)
LEFT_REALM_POWER_FLOOR = _parse_int(os.getenv("LEFT_REALM_POWER_FLOOR"), 10_000_000)

# Web auth (JWT secret, initial admin bootstrap)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = _parse_int(os.getenv("JWT_EXPIRE_DAYS"), 7)
INITIAL_ADMIN_USERNAME = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
INITIAL_ADMIN_PASSWORD = os.getenv("INITIAL_ADMIN_PASSWORD", "")  # Set to bootstrap first admin

# API server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _parse_int(os.getenv("API_PORT"), 8000)
API_RELOAD = os.getenv("API_RELOAD", "false").strip().lower() in ("1", "true", "yes")
