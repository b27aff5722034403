import logging
import queue
from datetime import datetime
from typing import Any, Literal, TypedDict

from scanner.config import EVENT_QUEUE_SIZE

logger = logging.getLogger(__name__)

EventKind = Literal[
    "scan_processed",
    "sync_progress",
    "sync_completed",
    "connectivity_changed",
]


class ChannelEvent(TypedDict):
    kind: EventKind
    at: str
    data: dict[str, Any]


class EventChannel:
    """
    Bounded core → host message channel.

    The host polls with `drain()`. When the queue is full the oldest event is
    dropped so publishers never block.
    """

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE):
        self._queue: queue.Queue[ChannelEvent] = queue.Queue(maxsize=maxsize)

    def publish(self, kind: EventKind, data: dict[str, Any] | None = None) -> ChannelEvent:
        event: ChannelEvent = {
            "kind": kind,
            "at": datetime.now().isoformat(timespec="milliseconds"),
            "data": dict(data or {}),
        }
        while True:
            try:
                self._queue.put_nowait(event)
                return event
            except queue.Full:
                try:
                    dropped = self._queue.get_nowait()
                    logger.debug("Event channel full; dropped %s", dropped["kind"])
                except queue.Empty:
                    pass

    def drain(self, limit: int | None = None) -> list[ChannelEvent]:
        events: list[ChannelEvent] = []
        while limit is None or len(events) < limit:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events
