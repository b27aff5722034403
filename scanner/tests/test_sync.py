import sqlite3
import threading

import httpx
from fastapi import BackgroundTasks

from database import journal, students
from scanner.services import sync as sync_service
from conftest import at


def test_offline_scan_then_sync_deletes_record(runtime, authority):
    students.cache_name("S1", "Jane Doe")
    runtime.monitor.set_online(False)
    runtime.engine.validate("S1", "TimeIn", teacher_id="T1", device_id="D1", now=at(7, 40))

    result = runtime.reconciler.run("T1")

    assert result["success"] is True
    assert result["success_count"] == 1
    assert result["fail_count"] == 0
    assert result["details"][0]["student_name"] == "Jane Doe"
    assert result["details"][0]["action"] == "synced"
    assert authority.submissions == [
        (
            "time-in",
            {"studentId": "S1", "date": "2026-03-02", "timeOfDay": "07:40:00", "teacherId": "T1"},
        )
    ]
    assert journal.list_pending("T1") == []
    assert journal.list_for_date("2026-03-02", "T1") == []


def test_record_without_teacher_is_sent_with_caller_scope(runtime, authority):
    journal.create_record("S2", "TimeOut", None, "D1", at(16, 0))
    journal.create_record("S3", "TimeIn", "T2", "D1", at(7, 0))

    runtime.reconciler.run("T1")
    runtime.reconciler.run(None)

    sent = [(path, body["studentId"], body["teacherId"]) for path, body in authority.submissions]
    assert sent == [("time-out", "S2", "T1"), ("time-in", "S3", "T2")]


def test_permanent_rejection_marks_record_rejected(runtime, authority):
    record = journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))["record"]
    authority.submit_responses.append(
        httpx.Response(400, json={"message": "Student is not assigned to your class"})
    )

    result = runtime.reconciler.run("T1")

    assert result["success"] is False
    assert result["fail_count"] == 1
    assert result["rejected_count"] == 1
    stored = journal.get_record(record["id"])
    assert stored["sync_state"] == "Rejected"
    assert stored["remarks"] == "Not your student"


def test_transient_failures_leave_record_pending(runtime, authority):
    first = journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))["record"]
    second = journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))["record"]
    authority.submit_responses.extend(
        [
            httpx.Response(500, text="Internal Server Error"),
            httpx.Response(400, json={"message": "No Time In found for today"}),
        ]
    )

    result = runtime.reconciler.run("T1")

    assert result["fail_count"] == 2
    assert result["rejected_count"] == 0
    for record in (first, second):
        stored = journal.get_record(record["id"])
        assert stored["sync_state"] == "Pending"
        assert stored["remarks"] is None


def test_rejected_records_are_retried_next_cycle(runtime, authority):
    record = journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))["record"]
    authority.submit_responses.append(httpx.Response(400, json={"message": "Section mismatch"}))
    runtime.reconciler.run("T1")
    assert journal.get_record(record["id"])["sync_state"] == "Rejected"

    result = runtime.reconciler.run("T1")

    assert result["success_count"] == 1
    assert journal.get_record(record["id"]) is None


def test_one_failing_record_does_not_stop_the_run(runtime, authority):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))
    authority.submit_responses.append(RuntimeError("handler exploded"))

    result = runtime.reconciler.run("T1")

    assert [d["action"] for d in result["details"]] == ["error", "synced"]
    assert result["success_count"] == 1
    assert result["fail_count"] == 1
    assert [r["student_id"] for r in journal.list_pending("T1")] == ["S1"]


def test_progress_reported_after_each_record(runtime):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))
    calls = []

    runtime.reconciler.run("T1", progress=lambda processed, total: calls.append((processed, total)))

    assert calls == [(1, 2), (2, 2)]


def test_cancel_stops_before_next_record(runtime):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    second = journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))["record"]
    cancel = threading.Event()

    result = runtime.reconciler.run("T1", progress=lambda *_: cancel.set(), cancel_event=cancel)

    assert result["cancelled"] is True
    assert result["success"] is False
    assert result["success_count"] == 1
    assert [r["id"] for r in journal.list_pending("T1")] == [second["id"]]


def test_empty_journal_sync_succeeds(runtime, authority):
    result = runtime.reconciler.run("T1")

    assert result["success"] is True
    assert result["message"] == "No pending records to sync."
    assert authority.submissions == []


def test_echoed_name_is_cached_and_labels_use_scan_order(runtime, authority):
    journal.create_record("U9", "TimeIn", "T1", "D1", at(8, 0))
    journal.create_record("U3", "TimeIn", "T1", "D1", at(8, 5))
    authority.names["U3"] = "Paolo Lim"

    result = runtime.reconciler.run("T1")

    assert [d["student_name"] for d in result["details"]] == ["Student 1", "Paolo Lim"]
    assert students.get_profile("U3")["full_name"] == "Paolo Lim"
    assert students.get_profile("U9") is None


def test_every_run_is_logged(runtime, authority):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))
    authority.submit_responses.append(httpx.Response(503))

    runtime.reconciler.run("T1")

    history = journal.get_sync_history()
    assert history[0]["status"] == "partial"
    assert history[0]["record_count"] == 2
    assert history[0]["success_count"] == 1
    assert history[0]["fail_count"] == 1


def test_sync_job_updates_status_and_publishes(runtime):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))

    sync_service.run_sync_job("T1")

    status = sync_service.get_sync_status()
    assert status["state"] == "success"
    assert status["processed"] == 1
    assert status["total"] == 1
    assert status["last_result"]["success_count"] == 1
    kinds = [e["kind"] for e in runtime.events.drain()]
    assert kinds == ["sync_progress", "sync_completed"]


def test_schedule_sync_queues_one_rerun_while_running(runtime):
    assert sync_service.SYNC_LOCK.acquire(blocking=False)
    try:
        assert sync_service.schedule_sync("T1") == "queued"
        assert sync_service.schedule_sync("T1") == "already_running"
        assert sync_service.get_sync_status()["queued"] is True
        assert sync_service.request_cancel() is True
    finally:
        sync_service.SYNC_LOCK.release()


def test_cancel_without_running_sync(runtime):
    assert sync_service.request_cancel() is False


def test_connectivity_restored_schedules_sync_for_last_teacher(runtime, monkeypatch):
    scheduled = []
    monkeypatch.setattr(sync_service, "schedule_sync", lambda scope: scheduled.append(scope) or "started")
    runtime.remember_teacher("T1")

    runtime.monitor.set_online(False)
    runtime.monitor.set_online(True)

    assert scheduled == ["T1"]
    events = [e for e in runtime.events.drain() if e["kind"] == "connectivity_changed"]
    assert [e["data"]["online"] for e in events] == [True]


def test_unreadable_journal_returns_failed_result(runtime, authority, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(journal, "list_pending", locked)

    result = runtime.reconciler.run("T1")

    assert result["success"] is False
    assert result["message"] == "Local storage is unavailable."
    assert result["total"] == 0
    assert authority.submissions == []
    assert journal.get_sync_history()[0]["status"] == "failed"


def test_sync_log_failure_keeps_pass_result(runtime, authority, monkeypatch):
    record = journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))["record"]

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(journal, "log_sync", locked)

    result = runtime.reconciler.run("T1")

    assert result["success"] is True
    assert result["success_count"] == 1
    assert journal.get_record(record["id"]) is None


def test_single_student_pass_leaves_others_pending(runtime, authority):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    journal.create_record("S2", "TimeIn", "T1", "D1", at(7, 41))
    journal.create_record("S2", "TimeOut", "T1", "D1", at(16, 0))

    result = runtime.reconciler.run("T1", student_id="S2")

    assert result["success_count"] == 2
    assert [(path, body["studentId"]) for path, body in authority.submissions] == [
        ("time-in", "S2"),
        ("time-out", "S2"),
    ]
    assert [r["student_id"] for r in journal.list_pending("T1")] == ["S1"]
    assert journal.get_sync_history()[0]["sync_type"] == "student"


def test_single_student_pass_with_nothing_pending(runtime, authority):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))

    result = runtime.reconciler.run("T1", student_id="S9")

    assert result["success"] is True
    assert result["message"] == "No pending records for student S9."
    assert authority.submissions == []


def test_sync_student_refused_while_sync_running(runtime):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    assert sync_service.SYNC_LOCK.acquire(blocking=False)
    try:
        assert sync_service.sync_student("T1", "S1") is None
    finally:
        sync_service.SYNC_LOCK.release()

    result = sync_service.sync_student("T1", "S1")
    assert result["success_count"] == 1
    assert sync_service.SYNC_LOCK.locked() is False
    completed = [e for e in runtime.events.drain() if e["kind"] == "sync_completed"]
    assert completed[0]["data"]["student_id"] == "S1"


def test_started_sync_holds_lock_until_worker_finishes(runtime, authority):
    journal.create_record("S1", "TimeIn", "T1", "D1", at(7, 40))
    tasks = BackgroundTasks()

    assert sync_service.schedule_sync("T1", tasks) == "started"
    # A request between scheduling and the worker starting is queued, not lost.
    assert sync_service.SYNC_LOCK.locked() is True
    assert sync_service.schedule_sync("T1", tasks) == "queued"
    assert len(tasks.tasks) == 1

    task = tasks.tasks[0]
    task.func(*task.args, **task.kwargs)

    assert sync_service.SYNC_LOCK.locked() is False
    assert sync_service.get_sync_status()["state"] == "success"
    assert [entry["status"] for entry in journal.get_sync_history()] == ["success", "success"]
    assert len(authority.submissions) == 1
