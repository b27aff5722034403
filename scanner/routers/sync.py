from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from database.journal import get_sync_history, list_pending, pending_count
from database.students import resolve_names
from scanner.security import DeviceSession, require_session
from scanner.services.sync import get_sync_status, request_cancel, schedule_sync, sync_student

router = APIRouter(dependencies=[Depends(require_session)])


@router.post("/sync/run")
def sync_run(background_tasks: BackgroundTasks, session: DeviceSession = Depends(require_session)):
    state = schedule_sync(session["teacher_id"], background_tasks)
    if state == "started":
        return {"ok": True, "queued": False, "message": "Sync started"}
    if state == "queued":
        return {"ok": True, "queued": True, "message": "Sync in progress; next pass queued"}
    return {"ok": False, "queued": True, "message": "Sync already running"}


@router.post("/sync/student/{student_id}")
def sync_one_student(student_id: str, session: DeviceSession = Depends(require_session)):
    result = sync_student(session["teacher_id"], student_id.strip())
    if result is None:
        raise HTTPException(status_code=409, detail="Sync already running. Try again when it finishes.")
    return result


@router.get("/sync/status")
def sync_status():
    return get_sync_status()


@router.post("/sync/cancel")
def sync_cancel():
    cancelled = request_cancel()
    return {"ok": cancelled, "message": "Cancelling sync" if cancelled else "No sync running"}


@router.get("/sync/pending-count")
def sync_pending_count(session: DeviceSession = Depends(require_session)):
    return {"teacher_id": session["teacher_id"], "count": pending_count(session["teacher_id"])}


@router.get("/sync/pending")
def sync_pending(date: str | None = None, session: DeviceSession = Depends(require_session)):
    teacher_id = session["teacher_id"]
    records = list_pending(teacher_id, date)
    names = resolve_names((r["student_id"] for r in records), teacher_id)
    return [{**r, "student_name": names.get(r["student_id"])} for r in records]


@router.get("/sync/history")
def sync_history(limit: int = Query(default=20, ge=1, le=200)):
    return get_sync_history(limit)
