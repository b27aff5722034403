import logging
from typing import Any, Callable, Literal, NamedTuple, TypedDict

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from scanner.config import (
    API_BASE_URL,
    API_HEALTH_PATH,
    API_ROSTER_PATH,
    API_STATUS_PATH,
    API_TIME_IN_PATH,
    API_TIME_OUT_PATH,
    PROBE_TIMEOUT_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    ROSTER_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

RejectionReason = Literal[
    "NOT_IN_CLASS",
    "SECTION_MISMATCH",
    "GRADE_MISMATCH",
    "ALREADY_RECORDED",
    "NO_TIME_IN",
    "MISSING_TEACHER",
    "SERVER_REJECTED",
]


class Rejection(NamedTuple):
    reason: RejectionReason
    message: str


class RemoteResponse(TypedDict):
    ok: bool
    status_code: int | None
    body: str
    data: Any
    transient: bool
    error: str | None


class DayStatusResponse(TypedDict):
    time_in: str | None
    time_out: str | None


class StudentProfileIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    student_id: str = Field(alias="studentId")
    full_name: str = Field(alias="fullName")
    grade_level: int | None = Field(default=None, alias="gradeLevel")
    section: str | None = None
    strand: str | None = None
    school_id: str | None = Field(default=None, alias="schoolId")


# Substring → rejection class. Order matters: the first match wins.
_REJECTION_MARKERS: tuple[tuple[str, RejectionReason, str], ...] = (
    ("not assigned", "NOT_IN_CLASS", "Not your student"),
    ("not in your class", "NOT_IN_CLASS", "Not your student"),
    ("section mismatch", "SECTION_MISMATCH", "Section mismatch"),
    ("grade level mismatch", "GRADE_MISMATCH", "Grade level mismatch"),
    ("already recorded", "ALREADY_RECORDED", "Already recorded"),
    ("already timed in", "ALREADY_RECORDED", "Already timed in today"),
    ("already timed out", "ALREADY_RECORDED", "Already timed out today"),
    ("no time in", "NO_TIME_IN", "No Time In found for today"),
    ("teacherid required", "MISSING_TEACHER", "Teacher session missing, please re-login"),
)

PERMANENT_REJECTIONS: frozenset[RejectionReason] = frozenset(
    {"NOT_IN_CLASS", "SECTION_MISMATCH", "GRADE_MISMATCH", "ALREADY_RECORDED"}
)


def _message_of(data: Any) -> str | None:
    if isinstance(data, dict):
        for key in ("message", "Message", "detail", "error"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(data, str) and data.strip():
        return data.strip()
    return None


def classify_rejection(body: str | None, data: Any = None) -> Rejection | None:
    """Match a failed response against the known rejection classes."""
    texts = [text for text in (_message_of(data), body) if text]
    for text in texts:
        lowered = text.lower()
        for marker, reason, message in _REJECTION_MARKERS:
            if marker in lowered:
                return Rejection(reason, message)
    return None


def server_message(response: RemoteResponse) -> str:
    message = _message_of(response["data"]) or (response["body"] or "").strip()
    if not message:
        status = response["status_code"]
        return f"Server rejected the scan (HTTP {status})" if status else "Server rejected the scan"
    return message[:200]


# -----------------------------
# Name extraction
# -----------------------------
NameParser = Callable[[dict[str, Any]], str | None]


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _name_from_student_name(data: dict[str, Any]) -> str | None:
    return _text(data.get("studentName"))


def _name_from_full_name(data: dict[str, Any]) -> str | None:
    return _text(data.get("fullName"))


def _name_from_parts(data: dict[str, Any]) -> str | None:
    first = _text(data.get("firstName"))
    last = _text(data.get("lastName"))
    if first and last:
        return f"{first} {last}"
    return first or last


NAME_PARSERS: tuple[NameParser, ...] = (
    _name_from_student_name,
    _name_from_full_name,
    _name_from_parts,
)


def extract_student_name(data: Any) -> str | None:
    """Best name the response body carries, checking a nested `student` object too."""
    if not isinstance(data, dict):
        return None
    candidates: list[dict[str, Any]] = [data]
    nested = data.get("student")
    if isinstance(nested, dict):
        candidates.append(nested)
    for candidate in candidates:
        for parser in NAME_PARSERS:
            name = parser(candidate)
            if name:
                return name
    return None


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 408


class RemoteClient:
    """
    Client for the central attendance authority.

    Network failures never raise out of the public methods; they are reported
    through `RemoteResponse.transient` or a None result.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def _event_path(self, event_type: str) -> str:
        return API_TIME_OUT_PATH if event_type == "TimeOut" else API_TIME_IN_PATH

    def submit_event(
        self,
        event_type: str,
        *,
        student_id: str,
        date: str,
        time_of_day: str,
        teacher_id: str | None,
        timeout: float | None = None,
    ) -> RemoteResponse:
        payload = {
            "studentId": student_id,
            "date": date,
            "timeOfDay": time_of_day,
            "teacherId": teacher_id or "",
        }
        path = self._event_path(event_type)
        try:
            response = self._client.post(path, json=payload, timeout=timeout or self.timeout)
        except httpx.TimeoutException as exc:
            logger.warning("%s submit for %s timed out: %s", event_type, student_id, exc)
            return {
                "ok": False,
                "status_code": None,
                "body": "",
                "data": None,
                "transient": True,
                "error": "timeout",
            }
        except httpx.HTTPError as exc:
            logger.warning("%s submit for %s failed: %s", event_type, student_id, exc)
            return {
                "ok": False,
                "status_code": None,
                "body": "",
                "data": None,
                "transient": True,
                "error": str(exc) or exc.__class__.__name__,
            }

        try:
            data = response.json()
        except ValueError:
            data = None

        ok = response.is_success
        if not ok:
            logger.info(
                "%s submit for %s returned HTTP %s: %s",
                event_type,
                student_id,
                response.status_code,
                response.text[:200],
            )
        return {
            "ok": ok,
            "status_code": response.status_code,
            "body": response.text,
            "data": data,
            "transient": not ok and _is_transient_status(response.status_code),
            "error": None,
        }

    def fetch_day_status(self, student_id: str, date: str) -> DayStatusResponse | None:
        """None when the status could not be read; the caller then uses the local journal."""
        path = API_STATUS_PATH.format(student_id=student_id)
        try:
            response = self._client.get(path, params={"date": date})
        except httpx.HTTPError as exc:
            logger.debug("Status lookup for %s failed: %s", student_id, exc)
            return None
        if not response.is_success:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        return {
            "time_in": _text(data.get("timeIn")),
            "time_out": _text(data.get("timeOut")),
        }

    def fetch_roster(self, teacher_id: str) -> list[StudentProfileIn] | None:
        path = API_ROSTER_PATH.format(teacher_id=teacher_id)
        try:
            response = self._client.get(path, timeout=ROSTER_TIMEOUT_SECONDS)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Roster fetch for teacher %s failed: %s", teacher_id, exc)
            return None

        if isinstance(data, dict):
            data = data.get("students", [])
        if not isinstance(data, list):
            logger.warning("Roster for teacher %s was not a list", teacher_id)
            return None

        profiles: list[StudentProfileIn] = []
        for item in data:
            try:
                profiles.append(StudentProfileIn.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed roster entry: %r", item)
        return profiles

    def ping(self) -> bool:
        try:
            response = self._client.get(API_HEALTH_PATH, timeout=PROBE_TIMEOUT_SECONDS)
        except httpx.HTTPError:
            return False
        return response.status_code < 500
