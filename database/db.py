import logging
import sqlite3
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any, Callable, Literal, TypedDict

from scanner.config import DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).resolve().parent / "migrations" / "001_scan_journal.sql"
REQUIRED_TABLES = {"scan_records", "student_profiles", "sync_log"}

# The journal is single-writer: every write in the process takes this lock.
WRITE_LOCK = threading.RLock()

StorageErrorKind = Literal["unwritable", "corrupt", "unavailable"]


class StorageError(TypedDict):
    kind: StorageErrorKind
    detail: str


class WriteResult(TypedDict):
    ok: bool
    value: Any
    error: StorageError | None
    recovered: bool


class StorageUnavailableError(RuntimeError):
    """Raised by reads when the journal cannot be opened even after recovery."""

    def __init__(self, error: StorageError):
        super().__init__(f"Local journal unavailable ({error['kind']}): {error['detail']}")
        self.error = error


_STORAGE_FAILURE_MARKERS: tuple[tuple[str, StorageErrorKind], ...] = (
    ("readonly database", "unwritable"),
    ("file is not a database", "corrupt"),
    ("malformed", "corrupt"),
    ("file is encrypted", "corrupt"),
    ("disk i/o error", "unavailable"),
    ("unable to open database file", "unavailable"),
)


def connect_db():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the journal tables when any of them is missing."""
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
          AND name IN ('scan_records', 'student_profiles', 'sync_log')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not REQUIRED_TABLES.issubset(existing):
        conn.executescript(SCHEMA_FILE.read_text(encoding="utf-8"))


def classify_storage_error(exc: BaseException) -> StorageError | None:
    """
    Map a low-level failure to a StorageError, or None when the failure is not
    about the backing file (constraint violations, SQL bugs, lock timeouts).
    """
    if isinstance(exc, sqlite3.IntegrityError):
        return None
    if isinstance(exc, OSError):
        return {"kind": "unavailable", "detail": str(exc)}
    if not isinstance(exc, sqlite3.DatabaseError):
        return None

    text = str(exc).lower()
    for marker, kind in _STORAGE_FAILURE_MARKERS:
        if marker in text:
            return {"kind": kind, "detail": str(exc)}
    return None


def _storage_paths() -> list[Path]:
    return [DB_PATH] + [DB_PATH.with_name(DB_PATH.name + suffix) for suffix in ("-journal", "-wal", "-shm")]


def recover_storage() -> None:
    """
    Delete the journal file and recreate an empty schema.

    The journal is a disposable cache of not-yet-synced scans; losing it costs
    only a re-scan, so recovery never tries to salvage rows.
    """
    with WRITE_LOCK:
        for path in _storage_paths():
            if path.exists():
                path.unlink()
        conn = connect_db()
        try:
            ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
    logger.warning("Local journal recreated at %s", DB_PATH)


def _attempt_write(op: Callable[[sqlite3.Connection], Any]) -> WriteResult:
    conn = None
    try:
        conn = connect_db()
        ensure_schema(conn)
        value = op(conn)
        conn.commit()
        return {"ok": True, "value": value, "error": None, "recovered": False}
    except (sqlite3.DatabaseError, OSError) as exc:
        if conn is not None:
            with suppress(sqlite3.Error):
                conn.rollback()
        error = classify_storage_error(exc)
        if error is None:
            raise
        return {"ok": False, "value": None, "error": error, "recovered": False}
    finally:
        if conn is not None:
            conn.close()


def run_write(op: Callable[[sqlite3.Connection], Any]) -> WriteResult:
    """
    Run `op` inside one transaction on the serialized write path.

    A storage failure is returned as a value. On the first failure the backing
    file is recreated and `op` is retried exactly once.
    """
    with WRITE_LOCK:
        result = _attempt_write(op)
        if result["error"] is None:
            return result

        logger.warning(
            "Journal write failed (%s): %s; recreating storage",
            result["error"]["kind"],
            result["error"]["detail"],
        )
        try:
            recover_storage()
        except (sqlite3.Error, OSError) as exc:
            logger.error("Journal recovery failed: %s", exc)
            return {
                "ok": False,
                "value": None,
                "error": {"kind": "unavailable", "detail": str(exc)},
                "recovered": False,
            }

        retried = _attempt_write(op)
        retried["recovered"] = True
        if retried["error"] is not None:
            logger.error("Journal write failed after recovery: %s", retried["error"]["detail"])
        return retried


def _attempt_read(op: Callable[[sqlite3.Connection], Any]) -> tuple[Any, StorageError | None]:
    conn = None
    try:
        conn = connect_db()
        ensure_schema(conn)
        return op(conn), None
    except (sqlite3.DatabaseError, OSError) as exc:
        error = classify_storage_error(exc)
        if error is None:
            raise
        return None, error
    finally:
        if conn is not None:
            conn.close()


def run_read(op: Callable[[sqlite3.Connection], Any]) -> Any:
    value, error = _attempt_read(op)
    if error is None:
        return value

    logger.warning("Journal read failed (%s): %s; recreating storage", error["kind"], error["detail"])
    recover_storage()
    value, error = _attempt_read(op)
    if error is not None:
        raise StorageUnavailableError(error)
    return value


def create_tables() -> WriteResult:
    """Open (or heal) the journal and drop Synced backups left by a previous run."""

    def _initialize(conn: sqlite3.Connection) -> int:
        cur = conn.cursor()
        cur.execute("DELETE FROM scan_records WHERE sync_state = 'Synced'")
        return int(cur.rowcount or 0)

    result = run_write(_initialize)
    if result["ok"] and result["value"]:
        logger.info("Removed %s synced backup record(s) from the journal", result["value"])
    return result
