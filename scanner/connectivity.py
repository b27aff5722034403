import logging
import threading
import time
from typing import Callable

from scanner.config import CONNECTIVITY_TTL_SECONDS
from scanner.remote import RemoteClient

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectionMonitor:
    """
    Online/offline state for the device, answered from a cached probe.

    The host may push OS-level connectivity with `set_online`; the validation
    path calls `mark_offline` after a transient remote failure so the next
    scans skip the network until the cache expires.
    """

    def __init__(
        self,
        remote: RemoteClient,
        *,
        ttl_seconds: float = CONNECTIVITY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._remote = remote
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._online: bool | None = None
        self._checked_at: float | None = None
        self._listeners: list[ConnectivityListener] = []

    def add_listener(self, listener: ConnectivityListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _record(self, online: bool) -> None:
        with self._lock:
            previous = self._online
            self._online = online
            self._checked_at = self._clock()
            listeners = list(self._listeners)

        if previous is None or previous == online:
            return

        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")

    def check(self) -> bool:
        online = self._remote.ping()
        self._record(online)
        return online

    def is_online(self) -> bool:
        with self._lock:
            cached = self._online
            checked_at = self._checked_at
        if cached is not None and checked_at is not None and self._clock() - checked_at < self._ttl:
            return cached
        return self.check()

    def set_online(self, online: bool) -> None:
        self._record(bool(online))

    def mark_offline(self) -> None:
        self._record(False)

    @property
    def last_known(self) -> bool | None:
        with self._lock:
            return self._online
