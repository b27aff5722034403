import logging
import threading
from datetime import datetime
from typing import Callable

import httpx

from scanner.config import API_BASE_URL, DEVICE_ID
from scanner.connectivity import ConnectionMonitor
from scanner.events import EventChannel
from scanner.reconciler import SyncReconciler
from scanner.remote import RemoteClient
from scanner.session import SessionRegistry
from scanner.validation import ValidationEngine

logger = logging.getLogger(__name__)


class Runtime:
    """Object graph shared by the HTTP surface and the background sync job."""

    def __init__(
        self,
        remote: RemoteClient,
        *,
        clock: Callable[[], datetime] = datetime.now,
        device_id: str = DEVICE_ID,
    ):
        self.device_id = device_id
        self.remote = remote
        self.events = EventChannel()
        self.monitor = ConnectionMonitor(remote)
        self.engine = ValidationEngine(remote, self.monitor, clock=clock, events=self.events)
        self.reconciler = SyncReconciler(remote)
        self.sessions = SessionRegistry()
        self._lock = threading.Lock()
        self._last_teacher_id: str | None = None
        self.monitor.add_listener(self._on_connectivity_changed)

    @property
    def last_teacher_id(self) -> str | None:
        with self._lock:
            return self._last_teacher_id

    def remember_teacher(self, teacher_id: str | None) -> None:
        with self._lock:
            self._last_teacher_id = teacher_id or None

    def _on_connectivity_changed(self, online: bool) -> None:
        self.events.publish("connectivity_changed", {"online": online})
        teacher_id = self.last_teacher_id
        if online and teacher_id:
            from scanner.services.sync import schedule_sync

            state = schedule_sync(teacher_id)
            logger.info("Connectivity restored; sync %s for teacher %s", state, teacher_id)

    def close(self) -> None:
        self.remote.close()


_RUNTIME: Runtime | None = None
_RUNTIME_LOCK = threading.Lock()


def build_runtime(
    *,
    base_url: str = API_BASE_URL,
    transport: httpx.BaseTransport | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Runtime:
    return Runtime(RemoteClient(base_url, transport=transport), clock=clock)


def get_runtime() -> Runtime:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = build_runtime()
        return _RUNTIME


def set_runtime(runtime: Runtime | None) -> None:
    global _RUNTIME
    with _RUNTIME_LOCK:
        previous = _RUNTIME
        _RUNTIME = runtime
    if previous is not None and previous is not runtime:
        previous.close()
