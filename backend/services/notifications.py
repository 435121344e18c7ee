import asyncio
import itertools
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

UNKNOWN_CARD_TOPIC = "unknown-card-scan"
UNAUTHORIZED_SCAN_TOPIC = "unauthorized-scan"
NEW_ATTENDANCE_TOPIC = "new-attendance"
ATTENDANCE_UPDATED_TOPIC = "attendance-updated"
ABSENTEES_MARKED_TOPIC = "absentees-marked"
EXAM_STATUS_TOPIC = "exam-status-changed"
STUDENT_ENROLLED_TOPIC = "student-enrolled"
SCANNER_STATUS_TOPIC = "scanner-status"


class NotificationHub:
    """
    Fire-and-forget fan-out of dashboard events.

    `publish` may be called from worker threads (sync endpoints); events are
    handed to each subscriber's asyncio queue on that subscriber's loop.
    """

    def __init__(self, history_size: int = 50):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._subscribers: dict[int, tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = {}

    def publish(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        event = {
            "topic": topic,
            "payload": payload,
            "published_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers.items())

        for sub_id, (loop, queue) in subscribers:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # loop already closed; the socket handler will clean up
                logger.debug("Dropping event %s for closed subscriber %s", topic, sub_id)
        return event

    def subscribe(self) -> tuple[int, asyncio.Queue]:
        """Register a subscriber on the running event loop."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = (loop, queue)
        return sub_id, queue

    def unsubscribe(self, sub_id: int) -> None:
        with self._lock:
            self._subscribers.pop(sub_id, None)

    def recent(self, limit: int = 20, topic: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._history)
        if topic:
            events = [e for e in events if e["topic"] == topic]
        return list(reversed(events))[:limit]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
