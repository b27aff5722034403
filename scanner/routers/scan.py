from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from database.journal import get_record, list_for_date
from database.students import resolve_name, resolve_names
from scanner.qr import decode_image, read_qr_payload
from scanner.runtime import Runtime, get_runtime
from scanner.security import DeviceSession, require_session

router = APIRouter(dependencies=[Depends(require_session)])

EventTypeHint = Literal["TimeIn", "TimeOut"]


class ScanRequest(BaseModel):
    payload: str
    event_type: EventTypeHint | None = None


def _run_scan(
    runtime: Runtime,
    session: DeviceSession,
    payload: str,
    event_type: EventTypeHint | None,
) -> dict:
    scan_session = runtime.sessions.get(session["sub"])
    outcome = scan_session.submit(
        payload,
        lambda value: runtime.engine.validate(
            value,
            event_type,
            teacher_id=session["teacher_id"],
            device_id=session["sub"],
        ),
    )
    if outcome is None:
        return {"dropped": True, "dropped_count": scan_session.dropped}
    return {"dropped": False, **outcome}


@router.post("/scan")
def scan(
    request: ScanRequest,
    session: DeviceSession = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    return _run_scan(runtime, session, request.payload, request.event_type)


@router.post("/scan/frame")
async def scan_frame(
    session: DeviceSession = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
    file: UploadFile = File(...),
    event_type: EventTypeHint | None = Form(default=None),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    frame = decode_image(await file.read())
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    payload = read_qr_payload(frame)
    if payload is None:
        raise HTTPException(status_code=422, detail="No QR code found in image.")

    return _run_scan(runtime, session, payload, event_type)


@router.get("/scan/today")
def scans_for_day(date: str | None = None, session: DeviceSession = Depends(require_session)):
    day = date or datetime.now().strftime("%Y-%m-%d")
    teacher_id = session["teacher_id"]
    records = list_for_date(day, teacher_id)
    names = resolve_names((r["student_id"] for r in records), teacher_id)
    return {
        "date": day,
        "rows": [{**r, "student_name": names.get(r["student_id"])} for r in records],
    }


@router.get("/scan/records/{record_id}")
def scan_record(record_id: str, session: DeviceSession = Depends(require_session)):
    record = get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found.")
    return {**record, "student_name": resolve_name(record["student_id"], session["teacher_id"])}
