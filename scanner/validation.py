import logging
from datetime import datetime
from typing import Callable, Literal, TypedDict

from database import journal, students
from database.db import StorageUnavailableError
from database.journal import AttendanceStatus, EventType
from scanner.connectivity import ConnectionMonitor
from scanner.events import EventChannel
from scanner.payload import PayloadSource, extract_student_id
from scanner.remote import (
    RejectionReason,
    RemoteClient,
    RemoteResponse,
    classify_rejection,
    extract_student_name,
    server_message,
)

logger = logging.getLogger(__name__)

OutcomeCode = Literal["ACCEPTED", "REJECTED", "ALREADY_RECORDED"]
ErrorKind = Literal[
    "NONE",
    "INVALID_FORMAT",
    "DUPLICATE_ENTRY",
    "VALIDATION_REJECTED",
    "STORAGE_ERROR",
    "SYSTEM_ERROR",
]
ScanPath = Literal["online", "offline"]

EVENT_LABELS: dict[str, str] = {"TimeIn": "Time In", "TimeOut": "Time Out"}


class ScanOutcome(TypedDict):
    outcome: OutcomeCode
    error_kind: ErrorKind
    reason: RejectionReason | None
    message: str
    student_id: str | None
    payload_source: PayloadSource | None
    student_name: str | None
    event_type: EventType | None
    status: AttendanceStatus | None
    path: ScanPath | None
    fell_back_offline: bool
    unknown_student: bool
    recorded_at: str | None
    date: str | None
    time: str | None


def _outcome(outcome: OutcomeCode, error_kind: ErrorKind, message: str, **fields) -> ScanOutcome:
    result: ScanOutcome = {
        "outcome": outcome,
        "error_kind": error_kind,
        "reason": None,
        "message": message,
        "student_id": None,
        "payload_source": None,
        "student_name": None,
        "event_type": None,
        "status": None,
        "path": None,
        "fell_back_offline": False,
        "unknown_student": False,
        "recorded_at": None,
        "date": None,
        "time": None,
    }
    result.update(fields)  # type: ignore[typeddict-item]
    return result


def resolve_event_type(has_time_in: bool, has_time_out: bool) -> EventType:
    if not has_time_in:
        return "TimeIn"
    if not has_time_out:
        return "TimeOut"
    # Both already exist; the duplicate check reports it.
    return "TimeIn"


def _existing_time(day: journal.DayStatus, event_type: EventType) -> str | None:
    if event_type == "TimeIn":
        return day["time_in"] if day["has_time_in"] else None
    return day["time_out"] if day["has_time_out"] else None


class ValidationEngine:
    """
    Turns one decoded payload into a terminal ScanOutcome.

    Online scans are submitted straight to the central authority (with a
    local Synced backup); offline scans, and online scans whose submit hit a
    transient failure, are journaled as Pending for the reconciler.
    """

    def __init__(
        self,
        remote: RemoteClient,
        monitor: ConnectionMonitor,
        *,
        clock: Callable[[], datetime] = datetime.now,
        events: EventChannel | None = None,
    ):
        self.remote = remote
        self.monitor = monitor
        self.clock = clock
        self.events = events

    def validate(
        self,
        payload: str | None,
        event_type_hint: EventType | None = None,
        *,
        teacher_id: str | None,
        device_id: str | None,
        now: datetime | None = None,
    ) -> ScanOutcome:
        try:
            result = self._validate(payload, event_type_hint, teacher_id=teacher_id, device_id=device_id, now=now)
        except StorageUnavailableError as exc:
            logger.error("Scan could not be validated: %s", exc)
            result = _outcome(
                "REJECTED",
                "STORAGE_ERROR",
                "Local storage is unavailable. Please scan again.",
            )
        except Exception:
            logger.exception("Unexpected error while validating scan")
            result = _outcome(
                "REJECTED",
                "SYSTEM_ERROR",
                "Scan could not be processed. Please try again.",
            )

        if self.events is not None:
            self.events.publish("scan_processed", dict(result))
        return result

    def _validate(
        self,
        payload: str | None,
        event_type_hint: EventType | None,
        *,
        teacher_id: str | None,
        device_id: str | None,
        now: datetime | None,
    ) -> ScanOutcome:
        parsed = extract_student_id(payload)
        if parsed is None:
            return _outcome("REJECTED", "INVALID_FORMAT", "Invalid QR code: no student id found.")

        if event_type_hint is not None and event_type_hint not in journal.EVENT_TYPES:
            return _outcome(
                "REJECTED",
                "INVALID_FORMAT",
                f"Unknown event type: {event_type_hint}",
                student_id=parsed.value,
                payload_source=parsed.source,
            )

        student_id = parsed.value
        stamp = now or self.clock()
        date = stamp.strftime("%Y-%m-%d")
        time_of_day = stamp.strftime("%H:%M:%S")
        online = self.monitor.is_online()

        event_type = event_type_hint or self._auto_event_type(student_id, date, online)
        context = {
            "student_id": student_id,
            "payload_source": parsed.source,
            "event_type": event_type,
            "date": date,
            "time": time_of_day,
        }

        if online:
            outcome = self._validate_online(
                student_id,
                event_type,
                stamp,
                teacher_id=teacher_id,
                device_id=device_id,
                context=context,
            )
            if outcome is not None:
                return outcome
            logger.info("Remote unavailable for %s; saving scan offline", student_id)
            return self._validate_offline(
                student_id,
                event_type,
                stamp,
                teacher_id=teacher_id,
                device_id=device_id,
                context={**context, "fell_back_offline": True},
            )

        return self._validate_offline(
            student_id,
            event_type,
            stamp,
            teacher_id=teacher_id,
            device_id=device_id,
            context=context,
        )

    def _auto_event_type(self, student_id: str, date: str, online: bool) -> EventType:
        if online:
            remote_status = self.remote.fetch_day_status(student_id, date)
            if remote_status is not None:
                return resolve_event_type(
                    remote_status["time_in"] is not None,
                    remote_status["time_out"] is not None,
                )
        day = journal.get_day_status(student_id, date)
        return resolve_event_type(day["has_time_in"], day["has_time_out"])

    # -----------------------------
    # Online branch
    # -----------------------------
    def _validate_online(
        self,
        student_id: str,
        event_type: EventType,
        stamp: datetime,
        *,
        teacher_id: str | None,
        device_id: str | None,
        context: dict,
    ) -> ScanOutcome | None:
        label = EVENT_LABELS[event_type]
        day = journal.get_day_status(student_id, context["date"])
        existing = _existing_time(day, event_type)
        if existing:
            name = students.resolve_name(student_id, teacher_id)
            return _outcome(
                "ALREADY_RECORDED",
                "DUPLICATE_ENTRY",
                f"{name} already has {label} today at {existing}.",
                student_name=name,
                path="online",
                recorded_at=existing,
                **context,
            )

        status = journal.compute_status(event_type, stamp.time())
        response = self.remote.submit_event(
            event_type,
            student_id=student_id,
            date=context["date"],
            time_of_day=context["time"],
            teacher_id=teacher_id,
        )

        if response["ok"]:
            return self._accept_online(
                response,
                student_id,
                event_type,
                stamp,
                status,
                teacher_id=teacher_id,
                device_id=device_id,
                context=context,
            )

        if response["transient"]:
            self.monitor.mark_offline()
            return None

        return self._reject_online(response, student_id, teacher_id=teacher_id, context=context)

    def _accept_online(
        self,
        response: RemoteResponse,
        student_id: str,
        event_type: EventType,
        stamp: datetime,
        status: AttendanceStatus,
        *,
        teacher_id: str | None,
        device_id: str | None,
        context: dict,
    ) -> ScanOutcome:
        name = extract_student_name(response["data"])
        if name:
            students.cache_name(student_id, name)
        else:
            name = students.resolve_name(student_id, teacher_id)

        backup = journal.create_record(
            student_id,
            event_type,
            teacher_id,
            device_id,
            stamp,
            sync_state="Synced",
        )
        if backup["outcome"] == "STORAGE_ERROR":
            logger.warning("Accepted scan for %s but the local backup failed: %s", student_id, backup["error"])

        return _outcome(
            "ACCEPTED",
            "NONE",
            f"{EVENT_LABELS[event_type]} recorded for {name} ({status}).",
            student_name=name,
            status=status,
            path="online",
            recorded_at=context["time"],
            **context,
        )

    def _reject_online(
        self,
        response: RemoteResponse,
        student_id: str,
        *,
        teacher_id: str | None,
        context: dict,
    ) -> ScanOutcome:
        name = extract_student_name(response["data"]) or students.resolve_name(student_id, teacher_id)
        rejection = classify_rejection(response["body"], response["data"])
        if rejection is None:
            reason: RejectionReason = "SERVER_REJECTED"
            message = server_message(response)
        else:
            reason, message = rejection.reason, rejection.message

        logger.info("Scan for %s rejected by server: %s (%s)", student_id, message, reason)
        return _outcome(
            "REJECTED",
            "VALIDATION_REJECTED",
            message,
            reason=reason,
            student_name=name,
            path="online",
            **context,
        )

    # -----------------------------
    # Offline branch
    # -----------------------------
    def _validate_offline(
        self,
        student_id: str,
        event_type: EventType,
        stamp: datetime,
        *,
        teacher_id: str | None,
        device_id: str | None,
        context: dict,
    ) -> ScanOutcome:
        label = EVENT_LABELS[event_type]
        known = students.is_known(student_id)
        day = journal.get_day_status(student_id, context["date"])

        if not known and (day["has_time_in"] or day["has_time_out"]):
            return self._unknown_duplicate(student_id, teacher_id, day, context)

        existing = _existing_time(day, event_type)
        if known and existing:
            name = students.resolve_name(student_id, teacher_id)
            return _outcome(
                "ALREADY_RECORDED",
                "DUPLICATE_ENTRY",
                f"{name} already has {label} today at {existing}.",
                student_name=name,
                path="offline",
                recorded_at=existing,
                **context,
            )

        created = journal.create_record(student_id, event_type, teacher_id, device_id, stamp)
        record = created["record"]
        if record is None:
            return _outcome(
                "REJECTED",
                "STORAGE_ERROR",
                "Scan could not be saved on this device. Please scan again.",
                path="offline",
                unknown_student=not known,
                **context,
            )

        if created["outcome"] == "DUPLICATE_SKIPPED":
            day = journal.get_day_status(student_id, context["date"])
            if not known:
                return self._unknown_duplicate(student_id, teacher_id, day, context)
            name = students.resolve_name(student_id, teacher_id)
            recorded_at = record["time_value"]
            return _outcome(
                "ALREADY_RECORDED",
                "DUPLICATE_ENTRY",
                f"{name} already has {label} today at {recorded_at}.",
                student_name=name,
                path="offline",
                recorded_at=recorded_at,
                **context,
            )

        name = students.resolve_name(student_id, teacher_id)
        return _outcome(
            "ACCEPTED",
            "NONE",
            f"{label} saved offline for {name} ({record['status']}). It will sync when online.",
            student_name=name,
            status=record["status"],
            path="offline",
            unknown_student=not known,
            recorded_at=record["time_value"],
            **context,
        )

    def _unknown_duplicate(
        self,
        student_id: str,
        teacher_id: str | None,
        day: journal.DayStatus,
        context: dict,
    ) -> ScanOutcome:
        name = students.resolve_name(student_id, teacher_id)
        recorded_at = day["time_in"] or day["time_out"]
        return _outcome(
            "REJECTED",
            "DUPLICATE_ENTRY",
            f"{name} was already scanned today at {recorded_at}. Unverified students can only be scanned once per day offline.",
            student_name=name,
            path="offline",
            unknown_student=True,
            recorded_at=recorded_at,
            **context,
        )
