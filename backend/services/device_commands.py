import threading
import time
from collections import deque
from typing import Any, Callable


class DeviceCommandQueue:
    """
    Per-device FIFO of pending scanner commands.

    Commands older than `max_age_seconds` are evicted whenever the queue is
    touched, so no background sweeper is needed.
    """

    def __init__(self, max_age_seconds: float = 300, *, clock: Callable[[], float] = time.time):
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._queues: dict[str, deque[dict[str, Any]]] = {}

    def enqueue(
        self,
        device_id: str,
        command: str,
        *,
        mode: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        entry = {
            "command": command,
            "mode": mode,
            "params": params,
            "timestamp": self._clock(),
        }
        with self._lock:
            self._sweep_locked(self._clock())
            self._queues.setdefault(device_id, deque()).append(entry)
        return entry

    def pop_next(self, device_id: str) -> dict[str, Any] | None:
        with self._lock:
            self._sweep_locked(self._clock())
            queue = self._queues.get(device_id)
            if not queue:
                return None
            entry = queue.popleft()
            if not queue:
                self._queues.pop(device_id, None)
            return entry

    def pending(self, device_id: str) -> int:
        with self._lock:
            self._sweep_locked(self._clock())
            return len(self._queues.get(device_id, ()))

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        removed = 0
        for device_id in list(self._queues):
            queue = self._queues[device_id]
            fresh = deque(c for c in queue if now - c["timestamp"] < self.max_age_seconds)
            removed += len(queue) - len(fresh)
            if fresh:
                self._queues[device_id] = fresh
            else:
                self._queues.pop(device_id)
        return removed


class DeviceStatusRegistry:
    """
    Last status report per scanner; stale devices are reported offline.

    Devices silent for longer than `forget_after_seconds` are dropped.
    """

    def __init__(
        self,
        offline_after_seconds: float = 300,
        *,
        forget_after_seconds: float = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.offline_after_seconds = offline_after_seconds
        self.forget_after_seconds = max(forget_after_seconds, offline_after_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._statuses: dict[str, dict[str, Any]] = {}

    def update(self, device_id: str, status: dict[str, Any]) -> dict[str, Any]:
        now = self._clock()
        record = {**status, "device_id": device_id, "last_seen": now}
        with self._lock:
            self._forget_locked(now)
            self._statuses[device_id] = record
        return dict(record)

    def list(self) -> list[dict[str, Any]]:
        now = self._clock()
        with self._lock:
            self._forget_locked(now)
            records = [dict(r) for r in self._statuses.values()]
        for record in records:
            if now - record["last_seen"] > self.offline_after_seconds:
                record["connected"] = False
                record["offline"] = True
        return records

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)

    def _forget_locked(self, now: float) -> None:
        for device_id, record in list(self._statuses.items()):
            if now - record["last_seen"] > self.forget_after_seconds:
                del self._statuses[device_id]
