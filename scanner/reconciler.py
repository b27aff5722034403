import logging
import threading
from typing import Callable, Literal, TypedDict

from database import journal, students
from database.journal import ScanRecord
from scanner.config import SYNC_TIMEOUT_SECONDS
from scanner.remote import (
    PERMANENT_REJECTIONS,
    RemoteClient,
    classify_rejection,
    extract_student_name,
    server_message,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
SyncAction = Literal["synced", "rejected", "retry", "error"]


class SyncDetail(TypedDict):
    record_id: str
    student_id: str
    student_name: str
    event_type: str
    action: SyncAction
    success: bool
    message: str


class SyncResult(TypedDict):
    success: bool
    message: str
    total: int
    success_count: int
    fail_count: int
    rejected_count: int
    cancelled: bool
    details: list[SyncDetail]


class SyncReconciler:
    """Drains Pending and Rejected journal records to the central authority."""

    def __init__(self, remote: RemoteClient, *, timeout: float = SYNC_TIMEOUT_SECONDS):
        self.remote = remote
        self.timeout = timeout

    def run(
        self,
        teacher_scope: str | None,
        progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        *,
        student_id: str | None = None,
    ) -> SyncResult:
        """
        One reconciliation pass. `student_id` narrows the pass to a single
        student's records. Never raises; a journal that cannot be read yields
        an unsuccessful result.
        """
        try:
            records = journal.list_pending(teacher_scope, student_id=student_id)
            # Resolved before any record is deleted.
            names = students.resolve_names((r["student_id"] for r in records), teacher_scope)
        except Exception:
            logger.error("Sync skipped: could not read the journal", exc_info=True)
            result = self._result(False, "Local storage is unavailable.", 0, [], cancelled=False)
            self._log(teacher_scope, result, student_id)
            return result

        total = len(records)
        if total == 0:
            message = "No pending records to sync."
            if student_id:
                message = f"No pending records for student {student_id}."
            result = self._result(True, message, 0, [], cancelled=False)
            self._log(teacher_scope, result, student_id)
            return result

        logger.info("Syncing %s record(s) for teacher %s", total, teacher_scope)

        details: list[SyncDetail] = []
        cancelled = False
        for processed, record in enumerate(records, start=1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info("Sync cancelled after %s of %s record(s)", processed - 1, total)
                break

            name = names.get(record["student_id"], record["student_id"])
            try:
                details.append(self._sync_record(record, name, teacher_scope))
            except Exception as exc:
                logger.exception("Sync failed for record %s", record["id"])
                details.append(
                    self._detail(record, name, "error", False, f"Sync error: {exc.__class__.__name__}")
                )

            if progress is not None:
                try:
                    progress(processed, total)
                except Exception:
                    logger.exception("Sync progress callback failed")

        success_count = sum(1 for d in details if d["success"])
        fail_count = len(details) - success_count
        if cancelled:
            message = f"Sync cancelled: {success_count} synced, {fail_count} failed."
        elif fail_count == 0:
            message = f"Synced {success_count} record(s)."
        else:
            message = f"Synced {success_count} record(s), {fail_count} failed."

        result = self._result(
            fail_count == 0 and not cancelled,
            message,
            total,
            details,
            cancelled=cancelled,
        )
        self._log(teacher_scope, result, student_id)
        return result

    def _sync_record(self, record: ScanRecord, name: str, teacher_scope: str | None) -> SyncDetail:
        response = self.remote.submit_event(
            record["event_type"],
            student_id=record["student_id"],
            date=record["date"],
            time_of_day=record["time_value"],
            teacher_id=record["teacher_id"] or teacher_scope,
            timeout=self.timeout,
        )

        if response["ok"]:
            echoed = extract_student_name(response["data"])
            if echoed:
                students.cache_name(record["student_id"], echoed)
                name = echoed
            journal.mark_synced(record["id"])
            return self._detail(record, name, "synced", True, "Synced")

        if response["transient"]:
            return self._detail(record, name, "retry", False, "Network unavailable; will retry")

        rejection = classify_rejection(response["body"], response["data"])
        if rejection is not None and rejection.reason in PERMANENT_REJECTIONS:
            journal.mark_rejected(record["id"], rejection.message)
            logger.info("Record %s rejected: %s", record["id"], rejection.message)
            return self._detail(record, name, "rejected", False, rejection.message)

        message = rejection.message if rejection is not None else server_message(response)
        return self._detail(record, name, "retry", False, message)

    @staticmethod
    def _detail(
        record: ScanRecord,
        name: str,
        action: SyncAction,
        success: bool,
        message: str,
    ) -> SyncDetail:
        return {
            "record_id": record["id"],
            "student_id": record["student_id"],
            "student_name": name,
            "event_type": record["event_type"],
            "action": action,
            "success": success,
            "message": message,
        }

    @staticmethod
    def _result(
        success: bool,
        message: str,
        total: int,
        details: list[SyncDetail],
        *,
        cancelled: bool,
    ) -> SyncResult:
        success_count = sum(1 for d in details if d["success"])
        return {
            "success": success,
            "message": message,
            "total": total,
            "success_count": success_count,
            "fail_count": len(details) - success_count,
            "rejected_count": sum(1 for d in details if d["action"] == "rejected"),
            "cancelled": cancelled,
            "details": details,
        }

    @staticmethod
    def _log(teacher_scope: str | None, result: SyncResult, student_id: str | None) -> None:
        if result["cancelled"]:
            status = "cancelled"
        elif result["success"]:
            status = "success"
        elif result["success_count"]:
            status = "partial"
        else:
            status = "failed"
        try:
            journal.log_sync(
                "student" if student_id else "attendance",
                teacher_id=teacher_scope,
                record_count=result["total"],
                success_count=result["success_count"],
                fail_count=result["fail_count"],
                status=status,
                error_message=None if result["success"] else result["message"],
            )
        except Exception:
            # Best effort; the pass result is returned either way.
            logger.warning("Could not record sync log entry", exc_info=True)
