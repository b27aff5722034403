from fastapi import APIRouter, Depends, HTTPException

import database.db as db
from scanner.config import (
    AFTERNOON_LATE_AFTER,
    API_BASE_URL,
    CONNECTIVITY_TTL_SECONDS,
    DEVICE_ID,
    ENABLE_DEBUG_ENDPOINTS,
    MIDDAY_BREAK_START,
    REQUEST_TIMEOUT_SECONDS,
    SCAN_DEBOUNCE_MS,
    SYNC_TIMEOUT_SECONDS,
    TIME_IN_LATE_AFTER,
)
from scanner.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(db.DB_PATH)}


@router.get("/config/scanner")
def scanner_config():
    return {
        "device_id": DEVICE_ID,
        "api_base_url": API_BASE_URL,
        "request_timeout_seconds": REQUEST_TIMEOUT_SECONDS,
        "sync_timeout_seconds": SYNC_TIMEOUT_SECONDS,
        "connectivity_ttl_seconds": CONNECTIVITY_TTL_SECONDS,
        "scan_debounce_ms": SCAN_DEBOUNCE_MS,
        "time_in_late_after": TIME_IN_LATE_AFTER.strftime("%H:%M:%S"),
        "midday_break_start": MIDDAY_BREAK_START.strftime("%H:%M:%S"),
        "afternoon_late_after": AFTERNOON_LATE_AFTER.strftime("%H:%M:%S"),
    }
