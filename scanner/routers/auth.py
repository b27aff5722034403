import logging
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from database.students import hydrate_roster
from scanner.runtime import Runtime, get_runtime
from scanner.security import DeviceSession, issue_session_token, require_session, verify_device_secret

logger = logging.getLogger(__name__)

router = APIRouter()


class DeviceLogin(BaseModel):
    device_id: str
    device_secret: str
    teacher_id: str


def _hydrate_if_online(runtime: Runtime, teacher_id: str) -> int | None:
    if not runtime.monitor.is_online():
        return None
    roster = runtime.remote.fetch_roster(teacher_id)
    if roster is None:
        return None
    count = hydrate_roster(teacher_id, [profile.model_dump() for profile in roster])
    return count if count >= 0 else None


@router.post("/auth/login")
def device_login(payload: DeviceLogin, runtime: Runtime = Depends(get_runtime)):
    device_id = payload.device_id.strip()
    teacher_id = payload.teacher_id.strip()

    if not device_id:
        raise HTTPException(status_code=400, detail="Device ID is required.")
    if not teacher_id:
        raise HTTPException(status_code=400, detail="Teacher ID is required.")
    if not verify_device_secret(payload.device_secret):
        raise HTTPException(status_code=401, detail="Invalid device credentials.")

    token, claims = issue_session_token(device_id, teacher_id)
    runtime.remember_teacher(teacher_id)
    hydrated = _hydrate_if_online(runtime, teacher_id)
    if hydrated is None:
        logger.info("Teacher %s signed in on %s; roster not refreshed", teacher_id, device_id)

    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "device_id": claims["sub"],
        "teacher_id": claims["teacher_id"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
        "online": runtime.monitor.last_known is True,
        "roster_hydrated": hydrated,
    }


@router.get("/auth/me")
def auth_me(session: DeviceSession = Depends(require_session)):
    return {
        "device_id": session["sub"],
        "teacher_id": session["teacher_id"],
        "expires_at": session["exp"],
        "issued_at": session["iat"],
    }
