import logging
import threading
import time
from typing import Callable, TypeVar

from scanner.config import SCAN_DEBOUNCE_MS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScanSession:
    """
    Per-device guard in front of the validation engine.

    A submit is dropped (returns None) while another scan is in flight, or
    when the same payload was seen within the debounce window.
    """

    def __init__(
        self,
        device_id: str,
        *,
        debounce_ms: int = SCAN_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device_id = device_id
        self.debounce_seconds = max(0, debounce_ms) / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = False
        self._last_payload: str | None = None
        self._last_seen_at: float | None = None
        self.dropped = 0

    def _try_begin(self, payload: str) -> bool:
        with self._lock:
            now = self._clock()
            repeated = (
                self._last_payload == payload
                and self._last_seen_at is not None
                and now - self._last_seen_at < self.debounce_seconds
            )
            if self._in_flight or repeated:
                self.dropped += 1
                return False
            self._in_flight = True
            self._last_payload = payload
            self._last_seen_at = now
            return True

    def _finish(self) -> None:
        with self._lock:
            self._in_flight = False
            # The window runs from when the scan finished, not when it started.
            self._last_seen_at = self._clock()

    def submit(self, payload: str, runner: Callable[[str], T]) -> T | None:
        if not self._try_begin(payload):
            logger.debug("Dropped scan on device %s", self.device_id)
            return None
        try:
            return runner(payload)
        finally:
            self._finish()


class SessionRegistry:
    def __init__(self, *, debounce_ms: int = SCAN_DEBOUNCE_MS, clock: Callable[[], float] = time.monotonic):
        self._debounce_ms = debounce_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, ScanSession] = {}

    def get(self, device_id: str) -> ScanSession:
        with self._lock:
            session = self._sessions.get(device_id)
            if session is None:
                session = ScanSession(device_id, debounce_ms=self._debounce_ms, clock=self._clock)
                self._sessions[device_id] = session
            return session

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
