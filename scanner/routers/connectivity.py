from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from scanner.runtime import Runtime, get_runtime
from scanner.security import require_session

router = APIRouter(dependencies=[Depends(require_session)])


class ConnectivityReport(BaseModel):
    online: bool


@router.get("/connectivity")
def connectivity(runtime: Runtime = Depends(get_runtime)):
    return {"online": runtime.monitor.is_online()}


@router.post("/connectivity")
def report_connectivity(payload: ConnectivityReport, runtime: Runtime = Depends(get_runtime)):
    runtime.monitor.set_online(payload.online)
    return {"online": payload.online}


@router.get("/events")
def events(limit: int = Query(default=100, ge=1, le=500), runtime: Runtime = Depends(get_runtime)):
    return {"events": runtime.events.drain(limit)}
