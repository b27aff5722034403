from fastapi import APIRouter, Depends, HTTPException

from database.journal import clear_journal
from scanner.runtime import Runtime, get_runtime
from scanner.security import require_session
from scanner.services.sync import SYNC_LOCK, reset_sync_status

router = APIRouter(dependencies=[Depends(require_session)])


@router.post("/admin/reset/journal")
def reset_journal(runtime: Runtime = Depends(get_runtime)):
    if SYNC_LOCK.locked():
        raise HTTPException(status_code=409, detail="Sync in progress. Cancel it before resetting.")

    ok = clear_journal()
    if not ok:
        raise HTTPException(status_code=503, detail="Local journal unavailable.")

    runtime.sessions.clear()
    reset_sync_status("Journal reset.")
    return {"ok": True, "message": "Scan journal cleared"}
