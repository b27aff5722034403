import os
import secrets
import socket
from datetime import time
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SCANBOOK_DB_PATH", BASE_DIR / "database" / "scanbook.db"))
DEVICE_ID = os.getenv("SCANBOOK_DEVICE_ID", "").strip() or socket.gethostname()
DEVICE_SECRET = os.getenv("SCANBOOK_DEVICE_SECRET", "scanbook-device-secret-change-me").strip()
SIGNING_KEY = (
    os.getenv("SCANBOOK_SIGNING_KEY", "").strip()
    or DEVICE_SECRET
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SCANBOOK_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_time(value: str | None, fallback: time) -> time:
    if not value:
        return fallback
    parts = value.split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1]) if len(parts) > 1 else 0
        ss = int(parts[2]) if len(parts) > 2 else 0
        return time(hh, mm, ss)
    except Exception:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _normalize_base_url(value: str) -> str:
    return value.strip().rstrip("/") or "http://127.0.0.1:8080/api"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SCANBOOK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SCANBOOK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SCANBOOK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SCANBOOK_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("SCANBOOK_ENABLE_DEBUG_ENDPOINTS"), False)

LOG_LEVEL = os.getenv("SCANBOOK_LOG_LEVEL", "INFO").strip() or "INFO"
LOG_FILE = os.getenv("SCANBOOK_LOG_FILE", "").strip() or None

# Central attendance authority
API_BASE_URL = _normalize_base_url(os.getenv("SCANBOOK_API_BASE_URL", "http://127.0.0.1:8080/api"))
API_TIME_IN_PATH = os.getenv("SCANBOOK_API_TIME_IN_PATH", "/attendance/time-in")
API_TIME_OUT_PATH = os.getenv("SCANBOOK_API_TIME_OUT_PATH", "/attendance/time-out")
API_STATUS_PATH = os.getenv("SCANBOOK_API_STATUS_PATH", "/attendance/status/{student_id}")
API_ROSTER_PATH = os.getenv("SCANBOOK_API_ROSTER_PATH", "/roster/{teacher_id}")
API_HEALTH_PATH = os.getenv("SCANBOOK_API_HEALTH_PATH", "/health")

REQUEST_TIMEOUT_SECONDS = _parse_float(os.getenv("SCANBOOK_REQUEST_TIMEOUT_SECONDS"), 10.0)
SYNC_TIMEOUT_SECONDS = _parse_float(os.getenv("SCANBOOK_SYNC_TIMEOUT_SECONDS"), 30.0)
ROSTER_TIMEOUT_SECONDS = _parse_float(os.getenv("SCANBOOK_ROSTER_TIMEOUT_SECONDS"), 60.0)
PROBE_TIMEOUT_SECONDS = _parse_float(os.getenv("SCANBOOK_PROBE_TIMEOUT_SECONDS"), 8.0)
CONNECTIVITY_TTL_SECONDS = _parse_float(os.getenv("SCANBOOK_CONNECTIVITY_TTL_SECONDS"), 15.0)

# Scan ingestion
SCAN_DEBOUNCE_MS = max(0, int(os.getenv("SCANBOOK_SCAN_DEBOUNCE_MS", "200")))
EVENT_QUEUE_SIZE = max(1, int(os.getenv("SCANBOOK_EVENT_QUEUE_SIZE", "500")))

# Time-in status windows: Late from LATE_AFTER until BREAK_START, Present over
# the midday break, Late again from AFTERNOON_LATE_AFTER to midnight.
TIME_IN_LATE_AFTER = _parse_time(os.getenv("SCANBOOK_TIME_IN_LATE_AFTER"), time(7, 0))
MIDDAY_BREAK_START = _parse_time(os.getenv("SCANBOOK_MIDDAY_BREAK_START"), time(11, 0))
AFTERNOON_LATE_AFTER = _parse_time(os.getenv("SCANBOOK_AFTERNOON_LATE_AFTER"), time(13, 5))
