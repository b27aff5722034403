import scanner.config as config
import scanner.routers.core as core
from database import journal
from scanner.services import sync as sync_service
from scanner.session import SessionRegistry


def _go_offline(client, auth_headers):
    res = client.post("/connectivity", json={"online": False}, headers=auth_headers)
    assert res.status_code == 200


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["db_path"].endswith("scanbook_test.db")


def test_scanner_config_reports_status_windows(client):
    res = client.get("/config/scanner")
    assert res.status_code == 200
    payload = res.json()
    assert payload["time_in_late_after"] == "07:00:00"
    assert payload["midday_break_start"] == "11:00:00"
    assert payload["afternoon_late_after"] == "13:05:00"


def test_login_rejects_invalid_device_secret(client):
    res = client.post(
        "/auth/login",
        json={"device_id": "device-1", "device_secret": "wrong-secret", "teacher_id": "T1"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid device credentials."


def test_login_requires_teacher(client):
    res = client.post(
        "/auth/login",
        json={"device_id": "device-1", "device_secret": config.DEVICE_SECRET, "teacher_id": "  "},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Teacher ID is required."


def test_login_online_hydrates_roster(client, authority):
    authority.roster = [
        {"studentId": "S1", "fullName": "Jane Doe", "gradeLevel": 11, "section": "A", "strand": "STEM"},
        {"studentId": "S2", "fullName": "John Cruz"},
        {"fullName": "No Id"},
    ]

    res = client.post(
        "/auth/login",
        json={"device_id": "device-1", "device_secret": config.DEVICE_SECRET, "teacher_id": "T1"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["online"] is True
    assert body["roster_hydrated"] == 2
    headers = {"Authorization": f"Bearer {body['access_token']}"}

    res = client.get("/students/S1", headers=headers)
    assert res.status_code == 200
    assert res.json()["full_name"] == "Jane Doe"
    assert res.json()["grade_level"] == 11

    me = client.get("/auth/me", headers=headers).json()
    assert me["device_id"] == "device-1"
    assert me["teacher_id"] == "T1"


def test_login_offline_skips_roster(client, authority):
    authority.online = False

    res = client.post(
        "/auth/login",
        json={"device_id": "device-1", "device_secret": config.DEVICE_SECRET, "teacher_id": "T1"},
    )
    assert res.status_code == 200
    assert res.json()["online"] is False
    assert res.json()["roster_hydrated"] is None


def test_endpoints_require_session(client):
    for method, path in [
        ("post", "/scan"),
        ("get", "/scan/today"),
        ("get", "/sync/pending-count"),
        ("post", "/sync/run"),
        ("get", "/events"),
        ("post", "/admin/reset/journal"),
    ]:
        res = getattr(client, method)(path)
        assert res.status_code == 401, path
        assert res.json()["detail"] == "Missing bearer token."


def test_offline_scan_of_unknown_student(client, auth_headers):
    _go_offline(client, auth_headers)

    res = client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["dropped"] is False
    assert body["outcome"] == "ACCEPTED"
    assert body["path"] == "offline"
    assert body["student_name"] == "Student 1"

    res = client.post("/scan", json={"payload": "U9", "event_type": "TimeOut"}, headers=auth_headers)
    assert res.json()["outcome"] == "REJECTED"
    assert res.json()["error_kind"] == "DUPLICATE_ENTRY"

    count = client.get("/sync/pending-count", headers=auth_headers).json()
    assert count == {"teacher_id": "T1", "count": 1}

    name = client.get("/students/U9/name", headers=auth_headers).json()
    assert name == {"student_id": "U9", "name": "Student 1", "known": False}

    pending = client.get("/sync/pending", headers=auth_headers).json()
    assert [(r["student_id"], r["student_name"]) for r in pending] == [("U9", "Student 1")]


def test_repeated_camera_read_is_dropped(client, auth_headers, runtime):
    runtime.sessions = SessionRegistry(debounce_ms=60_000)
    _go_offline(client, auth_headers)

    first = client.post("/scan", json={"payload": "STUDENT:S7"}, headers=auth_headers).json()
    second = client.post("/scan", json={"payload": "STUDENT:S7"}, headers=auth_headers).json()

    assert first["dropped"] is False
    assert first["payload_source"] == "prefix"
    assert second == {"dropped": True, "dropped_count": 1}
    assert journal.pending_count("T1") == 1


def test_sync_run_drains_journal(client, auth_headers, authority):
    _go_offline(client, auth_headers)
    client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)
    client.post("/scan", json={"payload": "U3", "event_type": "TimeIn"}, headers=auth_headers)

    res = client.post("/sync/run", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": True, "queued": False, "message": "Sync started"}

    status = client.get("/sync/status", headers=auth_headers).json()
    assert status["state"] == "success"
    assert status["last_result"]["success_count"] == 2
    assert [body["studentId"] for _, body in authority.submissions] == ["U9", "U3"]

    assert client.get("/sync/pending-count", headers=auth_headers).json()["count"] == 0
    history = client.get("/sync/history", headers=auth_headers).json()
    assert history[0]["status"] == "success"

    kinds = [e["kind"] for e in client.get("/events", headers=auth_headers).json()["events"]]
    assert "scan_processed" in kinds
    assert kinds[-1] == "sync_completed"


def test_sync_cancel_when_idle(client, auth_headers):
    res = client.post("/sync/cancel", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": False, "message": "No sync running"}


def test_connectivity_report_restores_sync(client, auth_headers, monkeypatch):
    scheduled = []
    monkeypatch.setattr(sync_service, "schedule_sync", lambda scope: scheduled.append(scope) or "started")

    _go_offline(client, auth_headers)
    res = client.post("/connectivity", json={"online": True}, headers=auth_headers)

    assert res.json() == {"online": True}
    assert scheduled == ["T1"]


def test_scan_today_lists_records_with_names(client, auth_headers):
    _go_offline(client, auth_headers)
    client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)

    res = client.get("/scan/today", headers=auth_headers)
    assert res.status_code == 200
    rows = res.json()["rows"]
    assert len(rows) == 1
    assert rows[0]["student_name"] == "Student 1"
    assert rows[0]["sync_state"] == "Pending"


def test_scan_frame_rejects_bad_uploads(client, auth_headers):
    res = client.post(
        "/scan/frame",
        files={"file": ("frame.gif", b"GIF89a", "image/gif")},
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Upload JPG/PNG only."

    res = client.post(
        "/scan/frame",
        files={"file": ("frame.jpg", b"not-an-image", "image/jpeg")},
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid image data."


def test_scan_frame_without_qr_code(client, auth_headers):
    import cv2
    import numpy as np

    blank = np.full((120, 120, 3), 255, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", blank)
    assert ok

    res = client.post(
        "/scan/frame",
        files={"file": ("blank.png", encoded.tobytes(), "image/png")},
        headers=auth_headers,
    )
    assert res.status_code == 422
    assert res.json()["detail"] == "No QR code found in image."


def test_roster_refresh_requires_connectivity(client, auth_headers, authority, monkeypatch):
    monkeypatch.setattr(sync_service, "schedule_sync", lambda scope: "started")
    authority.online = False

    res = client.post("/students/roster/refresh", headers=auth_headers)
    assert res.status_code == 503

    authority.online = True
    authority.roster = [{"studentId": "S1", "fullName": "Jane Doe"}]
    res = client.post("/students/roster/refresh", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": True, "teacher_id": "T1", "count": 1}


def test_reset_journal(client, auth_headers):
    _go_offline(client, auth_headers)
    client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)

    res = client.post("/admin/reset/journal", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert client.get("/sync/pending-count", headers=auth_headers).json()["count"] == 0


def test_sync_single_student_from_pending_list(client, auth_headers, authority):
    _go_offline(client, auth_headers)
    client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)
    client.post("/scan", json={"payload": "U3", "event_type": "TimeIn"}, headers=auth_headers)

    res = client.post("/sync/student/U3", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert [d["student_id"] for d in body["details"]] == ["U3"]

    pending = client.get("/sync/pending", headers=auth_headers).json()
    assert [r["student_id"] for r in pending] == ["U9"]


def test_sync_single_student_conflicts_with_running_sync(client, auth_headers):
    assert sync_service.SYNC_LOCK.acquire(blocking=False)
    try:
        res = client.post("/sync/student/U3", headers=auth_headers)
    finally:
        sync_service.SYNC_LOCK.release()

    assert res.status_code == 409
    assert res.json()["detail"] == "Sync already running. Try again when it finishes."


def test_scan_record_lookup(client, auth_headers):
    _go_offline(client, auth_headers)
    client.post("/scan", json={"payload": "U9", "event_type": "TimeIn"}, headers=auth_headers)
    record_id = client.get("/scan/today", headers=auth_headers).json()["rows"][0]["id"]

    res = client.get(f"/scan/records/{record_id}", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["student_id"] == "U9"
    assert res.json()["student_name"] == "Student 1"

    res = client.get("/scan/records/missing", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Record not found."
