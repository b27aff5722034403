import logging
import sqlite3
import uuid
from datetime import datetime, time
from typing import Any, Literal, TypedDict, cast

from database.db import StorageError, run_read, run_write
from scanner.config import AFTERNOON_LATE_AFTER, MIDDAY_BREAK_START, TIME_IN_LATE_AFTER

logger = logging.getLogger(__name__)

EventType = Literal["TimeIn", "TimeOut"]
AttendanceStatus = Literal["Present", "Late"]
SyncState = Literal["Pending", "Synced", "Rejected"]
CreateOutcome = Literal["CREATED", "DUPLICATE_SKIPPED", "STORAGE_ERROR"]

EVENT_TYPES: tuple[EventType, ...] = ("TimeIn", "TimeOut")

_RECORD_COLUMNS = (
    "id",
    "student_id",
    "teacher_id",
    "device_id",
    "date",
    "event_type",
    "time_value",
    "status",
    "remarks",
    "sync_state",
    "created_at",
    "updated_at",
)
_RECORD_SELECT = ", ".join(_RECORD_COLUMNS)


class ScanRecord(TypedDict):
    id: str
    student_id: str
    teacher_id: str | None
    device_id: str | None
    date: str
    event_type: EventType
    time_value: str
    status: AttendanceStatus
    remarks: str | None
    sync_state: SyncState
    created_at: str
    updated_at: str


class CreateResult(TypedDict):
    outcome: CreateOutcome
    record: ScanRecord | None
    error: StorageError | None


class DayStatus(TypedDict):
    has_time_in: bool
    time_in: str | None
    has_time_out: bool
    time_out: str | None


class SyncLogEntry(TypedDict):
    id: int
    sync_type: str
    teacher_id: str | None
    record_count: int
    success_count: int
    fail_count: int
    status: str
    error_message: str | None
    sync_time: str


def compute_status(event_type: EventType, scan_time: time) -> AttendanceStatus:
    """
    Time-in lateness by time of day:
      [00:00, 07:00) Present
      [07:00, 11:00) Late
      [11:00, 13:05) Present (midday break)
      [13:05, 24:00) Late
    Time-outs are always recorded as Present.
    """
    if event_type != "TimeIn":
        return "Present"
    if scan_time < TIME_IN_LATE_AFTER:
        return "Present"
    if scan_time < MIDDAY_BREAK_START:
        return "Late"
    if scan_time < AFTERNOON_LATE_AFTER:
        return "Present"
    return "Late"


def _stamp(value: datetime) -> str:
    return value.isoformat(sep=" ", timespec="microseconds")


def _row_to_record(row: tuple[Any, ...]) -> ScanRecord:
    return cast(ScanRecord, dict(zip(_RECORD_COLUMNS, row)))


def _scope_clause(teacher_id: str | None, params: list[Any], alias: str = "") -> str:
    # Records captured before anyone signed in carry no teacher and belong to every scope.
    if teacher_id is None:
        return ""
    params.append(teacher_id)
    return f" AND ({alias}teacher_id = ? OR {alias}teacher_id IS NULL)"


def _is_known_student(cur: sqlite3.Cursor, student_id: str) -> bool:
    cur.execute("SELECT 1 FROM student_profiles WHERE student_id = ?", (student_id,))
    return cur.fetchone() is not None


def _find_duplicate(
    cur: sqlite3.Cursor,
    *,
    student_id: str,
    date: str,
    event_type: EventType,
) -> ScanRecord | None:
    if _is_known_student(cur, student_id):
        cur.execute(
            f"""
            SELECT {_RECORD_SELECT}
            FROM scan_records
            WHERE student_id = ? AND date = ? AND event_type = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (student_id, date, event_type),
        )
    else:
        # Unknown identities cannot be verified offline: one record per day of any type.
        cur.execute(
            f"""
            SELECT {_RECORD_SELECT}
            FROM scan_records
            WHERE student_id = ? AND date = ?
            ORDER BY created_at ASC, rowid ASC
            LIMIT 1
            """,
            (student_id, date),
        )
    row = cur.fetchone()
    return _row_to_record(row) if row else None


def create_record(
    student_id: str,
    event_type: EventType,
    teacher_id: str | None,
    device_id: str | None,
    now: datetime | None = None,
    *,
    sync_state: SyncState = "Pending",
) -> CreateResult:
    """
    Journal one scan unless the same key already exists today.

    A duplicate is reported as DUPLICATE_SKIPPED and is a successful no-op for
    the caller. `sync_state="Synced"` is used for local history copies of scans
    the central authority already accepted.
    """
    clean_student_id = (student_id or "").strip()
    if not clean_student_id:
        raise ValueError("Student id is required.")
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unexpected event type: {event_type}")
    if sync_state == "Rejected":
        raise ValueError("Records cannot be created in the Rejected state.")

    stamp = now or datetime.now()
    event_date = stamp.strftime("%Y-%m-%d")
    time_value = stamp.strftime("%H:%M:%S")
    status = compute_status(event_type, stamp.time())

    def _create(conn: sqlite3.Connection) -> tuple[CreateOutcome, ScanRecord]:
        cur = conn.cursor()
        existing = _find_duplicate(cur, student_id=clean_student_id, date=event_date, event_type=event_type)
        if existing:
            return "DUPLICATE_SKIPPED", existing

        created_at = _stamp(stamp)
        record: ScanRecord = {
            "id": uuid.uuid4().hex,
            "student_id": clean_student_id,
            "teacher_id": teacher_id or None,
            "device_id": device_id or None,
            "date": event_date,
            "event_type": event_type,
            "time_value": time_value,
            "status": status,
            "remarks": None,
            "sync_state": sync_state,
            "created_at": created_at,
            "updated_at": created_at,
        }
        cur.execute(
            f"""
            INSERT INTO scan_records ({_RECORD_SELECT})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            tuple(record[column] for column in _RECORD_COLUMNS),
        )
        return "CREATED", record

    result = run_write(_create)
    if not result["ok"]:
        return {"outcome": "STORAGE_ERROR", "record": None, "error": result["error"]}

    outcome, record = result["value"]
    if outcome == "DUPLICATE_SKIPPED":
        logger.info(
            "%s already journaled for student %s on %s; skipping duplicate",
            event_type,
            clean_student_id,
            event_date,
        )
    else:
        logger.info(
            "Journaled %s for student %s at %s %s (%s, %s)",
            event_type,
            clean_student_id,
            event_date,
            time_value,
            status,
            sync_state,
        )
    return {"outcome": outcome, "record": record, "error": None}


def get_record(record_id: str) -> ScanRecord | None:
    def _get(conn: sqlite3.Connection) -> ScanRecord | None:
        cur = conn.cursor()
        cur.execute(f"SELECT {_RECORD_SELECT} FROM scan_records WHERE id = ?", (record_id,))
        row = cur.fetchone()
        return _row_to_record(row) if row else None

    return run_read(_get)


def list_pending(
    teacher_id: str | None = None,
    date: str | None = None,
    *,
    student_id: str | None = None,
) -> list[ScanRecord]:
    """Pending and Rejected records, oldest first."""
    params: list[Any] = []
    where = "sync_state IN ('Pending', 'Rejected')" + _scope_clause(teacher_id, params)
    if date:
        where += " AND date = ?"
        params.append(date)
    if student_id:
        where += " AND student_id = ?"
        params.append(student_id)

    def _list(conn: sqlite3.Connection) -> list[ScanRecord]:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_RECORD_SELECT}
            FROM scan_records
            WHERE {where}
            ORDER BY created_at ASC, rowid ASC
            """,
            params,
        )
        return [_row_to_record(row) for row in cur.fetchall()]

    return run_read(_list)


def list_for_date(date: str, teacher_id: str | None = None) -> list[ScanRecord]:
    params: list[Any] = [date]
    where = "date = ?" + _scope_clause(teacher_id, params)

    def _list(conn: sqlite3.Connection) -> list[ScanRecord]:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_RECORD_SELECT}
            FROM scan_records
            WHERE {where}
            ORDER BY created_at ASC, rowid ASC
            """,
            params,
        )
        return [_row_to_record(row) for row in cur.fetchall()]

    return run_read(_list)


def get_day_status(student_id: str, date: str) -> DayStatus:
    """Which event types the journal already holds for a student on a day, any state."""

    def _status(conn: sqlite3.Connection) -> DayStatus:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT event_type, MIN(time_value)
            FROM scan_records
            WHERE student_id = ? AND date = ?
            GROUP BY event_type
            """,
            (student_id, date),
        )
        found = {str(row[0]): str(row[1]) for row in cur.fetchall()}
        return {
            "has_time_in": "TimeIn" in found,
            "time_in": found.get("TimeIn"),
            "has_time_out": "TimeOut" in found,
            "time_out": found.get("TimeOut"),
        }

    return run_read(_status)


def mark_synced(record_id: str) -> bool:
    """The central authority accepted the record; Synced rows are not kept."""

    def _delete(conn: sqlite3.Connection) -> int:
        cur = conn.cursor()
        cur.execute("DELETE FROM scan_records WHERE id = ?", (record_id,))
        return int(cur.rowcount or 0)

    result = run_write(_delete)
    return bool(result["ok"] and result["value"])


def mark_rejected(record_id: str, remarks: str) -> bool:
    def _reject(conn: sqlite3.Connection) -> int:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE scan_records
            SET sync_state = 'Rejected',
                remarks = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (remarks, _stamp(datetime.now()), record_id),
        )
        return int(cur.rowcount or 0)

    result = run_write(_reject)
    return bool(result["ok"] and result["value"])


def pending_count(teacher_id: str | None = None) -> int:
    """Distinct students with records still waiting for the central authority."""
    params: list[Any] = []
    where = "sync_state IN ('Pending', 'Rejected')" + _scope_clause(teacher_id, params)

    def _count(conn: sqlite3.Connection) -> int:
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(DISTINCT student_id) FROM scan_records WHERE {where}", params)
        row = cur.fetchone()
        return int(row[0] or 0) if row else 0

    return run_read(_count)


def clear_journal() -> bool:
    def _clear(conn: sqlite3.Connection) -> None:
        cur = conn.cursor()
        cur.execute("DELETE FROM scan_records;")

    return run_write(_clear)["ok"]


# -----------------------------
# Sync log
# -----------------------------
def log_sync(
    sync_type: str,
    *,
    teacher_id: str | None,
    record_count: int,
    success_count: int,
    fail_count: int,
    status: str,
    error_message: str | None = None,
) -> None:
    def _log(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            INSERT INTO sync_log (
                sync_type,
                teacher_id,
                record_count,
                success_count,
                fail_count,
                status,
                error_message
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (sync_type, teacher_id, record_count, success_count, fail_count, status, error_message),
        )

    result = run_write(_log)
    if not result["ok"]:
        logger.warning("Could not record sync log entry: %s", result["error"])


def get_sync_history(limit: int = 20) -> list[SyncLogEntry]:
    safe_limit = max(1, min(int(limit), 200))

    def _history(conn: sqlite3.Connection) -> list[SyncLogEntry]:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT
                id,
                sync_type,
                teacher_id,
                record_count,
                success_count,
                fail_count,
                status,
                error_message,
                sync_time
            FROM sync_log
            ORDER BY id DESC
            LIMIT ?
            """,
            (safe_limit,),
        )
        return [
            {
                "id": int(row[0]),
                "sync_type": str(row[1]),
                "teacher_id": row[2],
                "record_count": int(row[3] or 0),
                "success_count": int(row[4] or 0),
                "fail_count": int(row[5] or 0),
                "status": str(row[6]),
                "error_message": row[7],
                "sync_time": str(row[8]),
            }
            for row in cur.fetchall()
        ]

    return run_read(_history)
