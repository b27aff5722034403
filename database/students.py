import logging
import re
import sqlite3
from datetime import datetime
from typing import Any, Iterable, Mapping, TypedDict

from database.db import run_read, run_write

logger = logging.getLogger(__name__)

_ANONYMOUS_LABEL_RE = re.compile(r"^Student \d+$")

_PROFILE_COLUMNS = (
    "student_id",
    "full_name",
    "grade_level",
    "section",
    "strand",
    "school_id",
    "teacher_id",
    "cached_at",
)


class StudentProfile(TypedDict):
    student_id: str
    full_name: str
    grade_level: int | None
    section: str | None
    strand: str | None
    school_id: str | None
    teacher_id: str | None
    cached_at: str


def anonymous_label(n: int) -> str:
    return f"Student {n}"


def is_anonymous_label(name: str | None) -> bool:
    return bool(name) and bool(_ANONYMOUS_LABEL_RE.match(name.strip()))


def _now_text() -> str:
    return datetime.now().isoformat(sep=" ", timespec="seconds")


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clean_grade(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_profile(student_id: str) -> StudentProfile | None:
    def _get(conn: sqlite3.Connection) -> StudentProfile | None:
        cur = conn.cursor()
        cur.execute(
            f"SELECT {', '.join(_PROFILE_COLUMNS)} FROM student_profiles WHERE student_id = ?",
            (student_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return dict(zip(_PROFILE_COLUMNS, row))  # type: ignore[return-value]

    return run_read(_get)


def is_known(student_id: str) -> bool:
    return get_profile(student_id) is not None


def list_unknown_ids(teacher_scope: str | None = None) -> list[str]:
    """
    Distinct ids with Pending/Rejected records and no cached profile, in the
    order they were first scanned. Position + 1 is the anonymous label number.
    """
    params: list[Any] = []
    scope = ""
    if teacher_scope is not None:
        scope = " AND (r.teacher_id = ? OR r.teacher_id IS NULL)"
        params.append(teacher_scope)

    def _list(conn: sqlite3.Connection) -> list[str]:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT r.student_id
            FROM scan_records r
            LEFT JOIN student_profiles p ON p.student_id = r.student_id
            WHERE r.sync_state IN ('Pending', 'Rejected')
              AND p.student_id IS NULL{scope}
            GROUP BY r.student_id
            ORDER BY MIN(r.created_at) ASC, MIN(r.rowid) ASC
            """,
            params,
        )
        return [str(row[0]) for row in cur.fetchall()]

    return run_read(_list)


def _label_for(student_id: str, unknown_ids: list[str]) -> str:
    try:
        return anonymous_label(unknown_ids.index(student_id) + 1)
    except ValueError:
        # Not journaled yet: the number it will receive once written.
        return anonymous_label(len(unknown_ids) + 1)


def resolve_name(student_id: str, teacher_scope: str | None = None) -> str:
    profile = get_profile(student_id)
    if profile and profile["full_name"]:
        return profile["full_name"]
    return _label_for(student_id, list_unknown_ids(teacher_scope))


def resolve_names(student_ids: Iterable[str], teacher_scope: str | None = None) -> dict[str, str]:
    """Resolve many ids against one snapshot of the profile cache and the journal."""
    ids = list(dict.fromkeys(student_ids))
    if not ids:
        return {}

    def _names(conn: sqlite3.Connection) -> dict[str, str]:
        cur = conn.cursor()
        placeholders = ", ".join("?" for _ in ids)
        cur.execute(
            f"SELECT student_id, full_name FROM student_profiles WHERE student_id IN ({placeholders})",
            ids,
        )
        return {str(row[0]): str(row[1]) for row in cur.fetchall() if row[1]}

    known = run_read(_names)
    unknown_ids: list[str] | None = None
    resolved: dict[str, str] = {}
    for student_id in ids:
        if student_id in known:
            resolved[student_id] = known[student_id]
            continue
        if unknown_ids is None:
            unknown_ids = list_unknown_ids(teacher_scope)
        resolved[student_id] = _label_for(student_id, unknown_ids)
    return resolved


def hydrate_roster(teacher_id: str | None, profiles: Iterable[Mapping[str, Any]]) -> int:
    """
    Replace the whole profile cache with `profiles`.

    Entries without an id or a name are skipped. Returns the number of rows
    written, or -1 when the journal could not be written.
    """
    cached_at = _now_text()
    rows: dict[str, tuple[Any, ...]] = {}
    for profile in profiles:
        student_id = _clean(profile.get("student_id"))
        full_name = _clean(profile.get("full_name"))
        if not student_id or not full_name or is_anonymous_label(full_name):
            continue
        rows[student_id] = (
            student_id,
            full_name,
            _clean_grade(profile.get("grade_level")),
            _clean(profile.get("section")),
            _clean(profile.get("strand")),
            _clean(profile.get("school_id")),
            _clean(profile.get("teacher_id")) or teacher_id,
            cached_at,
        )

    def _replace(conn: sqlite3.Connection) -> int:
        cur = conn.cursor()
        cur.execute("DELETE FROM student_profiles;")
        cur.executemany(
            f"""
            INSERT INTO student_profiles ({', '.join(_PROFILE_COLUMNS)})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            list(rows.values()),
        )
        return len(rows)

    result = run_write(_replace)
    if not result["ok"]:
        logger.error("Roster hydration failed: %s", result["error"])
        return -1
    logger.info("Hydrated %s student profile(s) for teacher %s", result["value"], teacher_id)
    return int(result["value"])


def cache_name(student_id: str, name: str | None) -> bool:
    """Upsert a real name for `student_id`; other cached columns are kept."""
    clean_id = _clean(student_id)
    clean_name = _clean(name)
    if not clean_id or not clean_name or is_anonymous_label(clean_name):
        return False

    def _upsert(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            INSERT INTO student_profiles (student_id, full_name, cached_at)
            VALUES (?, ?, ?)
            ON CONFLICT(student_id) DO UPDATE SET
                full_name = excluded.full_name,
                cached_at = excluded.cached_at
            """,
            (clean_id, clean_name, _now_text()),
        )

    result = run_write(_upsert)
    if not result["ok"]:
        logger.warning("Could not cache name for student %s: %s", clean_id, result["error"])
    return bool(result["ok"])
