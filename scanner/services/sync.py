import logging
import threading
from datetime import datetime

from fastapi import BackgroundTasks

from scanner.reconciler import SyncResult
from scanner.runtime import get_runtime

logger = logging.getLogger(__name__)

# -----------------------------
# Sync Status (in-memory)
# -----------------------------
SYNC_LOCK = threading.Lock()
STATUS_LOCK = threading.Lock()
RERUN_LOCK = threading.Lock()
CANCEL_EVENT = threading.Event()
SYNC_RERUN_REQUESTED = False
SYNC_RERUN_SCOPE: str | None = None

SYNC_STATUS = {
    "state": "idle",          # idle | running | success | failed | cancelled
    "teacher_id": None,
    "started_at": None,       # ISO string
    "finished_at": None,      # ISO string
    "message": "",
    "processed": 0,
    "total": 0,
    "last_success": None,     # ISO string
    "queued": False,          # whether another pass is queued
    "last_result": None,
}


def schedule_sync(teacher_scope: str | None, background_tasks: BackgroundTasks | None = None) -> str:
    """
    Returns:
      - "started": sync job scheduled now
      - "queued":  another pass queued after current run
      - "already_running": already running and queue already set
    """
    global SYNC_RERUN_REQUESTED, SYNC_RERUN_SCOPE

    # The lock taken here is handed to the worker, which releases it.
    with RERUN_LOCK:
        acquired = SYNC_LOCK.acquire(blocking=False)
        if not acquired:
            if SYNC_RERUN_REQUESTED:
                SYNC_RERUN_SCOPE = teacher_scope
                return "already_running"
            SYNC_RERUN_REQUESTED = True
            SYNC_RERUN_SCOPE = teacher_scope

    if not acquired:
        with STATUS_LOCK:
            SYNC_STATUS["queued"] = True
            SYNC_STATUS["message"] = "Sync in progress; next pass queued."
        return "queued"

    try:
        if background_tasks is not None:
            background_tasks.add_task(_run_held, teacher_scope)
        else:
            threading.Thread(target=_run_held, args=(teacher_scope,), name="scanbook-sync", daemon=True).start()
    except Exception:
        SYNC_LOCK.release()
        raise
    with STATUS_LOCK:
        SYNC_STATUS["queued"] = False
    return "started"


def _progress(processed: int, total: int) -> None:
    with STATUS_LOCK:
        SYNC_STATUS["processed"] = processed
        SYNC_STATUS["total"] = total
    get_runtime().events.publish("sync_progress", {"processed": processed, "total": total})


def run_sync_job(teacher_scope: str | None) -> None:
    """Runs the reconciler and updates SYNC_STATUS, then any queued pass."""
    if not SYNC_LOCK.acquire(blocking=False):
        logger.info("Sync already running; pass for teacher %s skipped", teacher_scope)
        return
    _run_held(teacher_scope)


def _release_or_take_rerun(allow_rerun: bool) -> tuple[bool, str | None]:
    """
    Releases SYNC_LOCK unless a rerun is queued and allowed, in which case the
    lock stays held for it. Decided under RERUN_LOCK, the lock schedule_sync
    queues under.
    """
    global SYNC_RERUN_REQUESTED, SYNC_RERUN_SCOPE

    with RERUN_LOCK:
        rerun = SYNC_RERUN_REQUESTED and allow_rerun
        scope = SYNC_RERUN_SCOPE
        SYNC_RERUN_REQUESTED = False
        SYNC_RERUN_SCOPE = None
        if not rerun:
            SYNC_LOCK.release()
    return rerun, scope


def _run_held(teacher_scope: str | None) -> None:
    held = True
    try:
        scope = teacher_scope
        while True:
            CANCEL_EVENT.clear()
            with STATUS_LOCK:
                SYNC_STATUS["state"] = "running"
                SYNC_STATUS["teacher_id"] = scope
                SYNC_STATUS["started_at"] = datetime.now().isoformat(timespec="seconds")
                SYNC_STATUS["finished_at"] = None
                SYNC_STATUS["message"] = "Sync started..."
                SYNC_STATUS["processed"] = 0
                SYNC_STATUS["total"] = 0
                SYNC_STATUS["queued"] = False

            runtime = get_runtime()
            result = runtime.reconciler.run(scope, progress=_progress, cancel_event=CANCEL_EVENT)
            finished_at = datetime.now().isoformat(timespec="seconds")

            with STATUS_LOCK:
                if result["cancelled"]:
                    SYNC_STATUS["state"] = "cancelled"
                else:
                    SYNC_STATUS["state"] = "success" if result["success"] else "failed"
                SYNC_STATUS["finished_at"] = finished_at
                SYNC_STATUS["message"] = result["message"]
                SYNC_STATUS["queued"] = False
                SYNC_STATUS["last_result"] = result
                if result["success"]:
                    SYNC_STATUS["last_success"] = finished_at

            rerun_queued, next_scope = _release_or_take_rerun(not result["cancelled"])
            held = rerun_queued
            runtime.events.publish("sync_completed", {"teacher_id": scope, **result})

            if not rerun_queued:
                break
            scope = next_scope

    except Exception as e:
        logger.exception("Sync job failed")
        finished_at = datetime.now().isoformat(timespec="seconds")
        with STATUS_LOCK:
            SYNC_STATUS["state"] = "failed"
            SYNC_STATUS["finished_at"] = finished_at
            SYNC_STATUS["message"] = f"Sync failed: {e}"
            SYNC_STATUS["queued"] = False
    finally:
        if held:
            _release_or_take_rerun(False)


def sync_student(teacher_scope: str | None, student_id: str) -> SyncResult | None:
    """
    Runs one pass over a single student's Pending and Rejected records and
    returns its result. Returns None while another sync holds the lock.
    """
    if not SYNC_LOCK.acquire(blocking=False):
        return None
    runtime = get_runtime()
    result = runtime.reconciler.run(teacher_scope, student_id=student_id)
    rerun_queued, next_scope = _release_or_take_rerun(True)
    if rerun_queued:
        threading.Thread(target=_run_held, args=(next_scope,), name="scanbook-sync", daemon=True).start()
    runtime.events.publish("sync_completed", {"teacher_id": teacher_scope, "student_id": student_id, **result})
    return result


def request_cancel() -> bool:
    if not SYNC_LOCK.locked():
        return False
    CANCEL_EVENT.set()
    with STATUS_LOCK:
        SYNC_STATUS["message"] = "Cancelling sync..."
    return True


def get_sync_status() -> dict:
    with STATUS_LOCK:
        return dict(SYNC_STATUS)


def reset_sync_status(message: str = "") -> None:
    global SYNC_RERUN_REQUESTED, SYNC_RERUN_SCOPE
    with RERUN_LOCK:
        SYNC_RERUN_REQUESTED = False
        SYNC_RERUN_SCOPE = None
    CANCEL_EVENT.clear()
    with STATUS_LOCK:
        SYNC_STATUS.update({
            "state": "idle",
            "teacher_id": None,
            "started_at": None,
            "finished_at": None,
            "message": message,
            "processed": 0,
            "total": 0,
            "last_success": None,
            "queued": False,
            "last_result": None,
        })
