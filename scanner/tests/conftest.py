import json
from datetime import datetime

import httpx
import pytest
from fastapi.testclient import TestClient

import database.db as db
import scanner.config as config
from scanner.runtime import build_runtime, set_runtime
from scanner.services import sync as sync_service
from scanner.session import SessionRegistry

AUTHORITY_URL = "http://authority.test/api"
SCAN_DAY = datetime(2026, 3, 2)


def at(hour: int, minute: int, second: int = 0, day: datetime = SCAN_DAY) -> datetime:
    return day.replace(hour=hour, minute=minute, second=second)


class FakeAuthority:
    """Central attendance server stand-in for httpx.MockTransport."""

    def __init__(self):
        self.online = True
        self.requests: list[httpx.Request] = []
        self.submissions: list[tuple[str, dict]] = []
        self.submit_responses: list = []
        self.names: dict[str, str] = {}
        self.day_status: dict[str, dict] = {}
        self.roster: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)

        path = request.url.path
        if path.endswith("/health"):
            return httpx.Response(200, json={"status": "ok"})
        if "/attendance/status/" in path:
            student_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.day_status.get(student_id, {"timeIn": None, "timeOut": None}))
        if "/roster/" in path:
            return httpx.Response(200, json=self.roster)
        if path.endswith("/attendance/time-in") or path.endswith("/attendance/time-out"):
            body = json.loads(request.content)
            self.submissions.append((path.rsplit("/", 1)[-1], body))
            if self.submit_responses:
                queued = self.submit_responses.pop(0)
                if isinstance(queued, Exception):
                    raise queued
                return queued
            return httpx.Response(
                200,
                json={"message": "Attendance recorded", "studentName": self.names.get(body["studentId"])},
            )
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "scanbook_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def authority():
    return FakeAuthority()


@pytest.fixture()
def runtime(temp_db, authority):
    rt = build_runtime(base_url=AUTHORITY_URL, transport=httpx.MockTransport(authority))
    rt.sessions = SessionRegistry(debounce_ms=0)
    set_runtime(rt)
    sync_service.reset_sync_status()
    yield rt
    set_runtime(None)
    sync_service.reset_sync_status()


@pytest.fixture()
def client(runtime):
    import scanner.main as main

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "device_id": "device-1",
            "device_secret": config.DEVICE_SECRET,
            "teacher_id": "T1",
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
