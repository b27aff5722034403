from fastapi import APIRouter, Depends, HTTPException

from database.students import get_profile, hydrate_roster, resolve_name
from scanner.runtime import Runtime, get_runtime
from scanner.security import DeviceSession, require_session

router = APIRouter(dependencies=[Depends(require_session)])


@router.get("/students/{student_id}/name")
def student_name(student_id: str, session: DeviceSession = Depends(require_session)):
    profile = get_profile(student_id)
    return {
        "student_id": student_id,
        "name": resolve_name(student_id, session["teacher_id"]),
        "known": profile is not None,
    }


@router.get("/students/{student_id}")
def student_detail(student_id: str):
    profile = get_profile(student_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Student not found.")
    return profile


@router.post("/students/roster/refresh")
def refresh_roster(
    session: DeviceSession = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    teacher_id = session["teacher_id"]
    if not teacher_id:
        raise HTTPException(status_code=400, detail="Sign in as a teacher to refresh the roster.")
    if not runtime.monitor.check():
        raise HTTPException(status_code=503, detail="Central server unreachable. Roster not refreshed.")

    roster = runtime.remote.fetch_roster(teacher_id)
    if roster is None:
        raise HTTPException(status_code=502, detail="Roster could not be loaded from the central server.")

    count = hydrate_roster(teacher_id, [profile.model_dump() for profile in roster])
    if count < 0:
        raise HTTPException(status_code=503, detail="Local storage unavailable. Roster not saved.")
    return {"ok": True, "teacher_id": teacher_id, "count": count}
