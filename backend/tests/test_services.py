import asyncio
import logging

import pytest

from backend.routers.notifications import _forward_events, _stop_forwarder
from backend.services.device_commands import DeviceCommandQueue, DeviceStatusRegistry
from backend.services.exam_status import ExamStatusError, check_status_transition, is_scannable
from backend.services.notifications import NEW_ATTENDANCE_TOPIC, UNKNOWN_CARD_TOPIC, NotificationHub
from backend.services.stats_cache import ATTENDANCE_STATS_KEY, STUDENT_STATS_KEY, TTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# -----------------------------
# Stats cache
# -----------------------------
def test_cache_entry_expires_after_ttl():
    clock = FakeClock()
    cache = TTLCache(30, clock=clock)
    cache.set(ATTENDANCE_STATS_KEY, {"today": 3})

    clock.advance(29.9)
    assert cache.get(ATTENDANCE_STATS_KEY) == {"today": 3}

    clock.advance(0.1)
    assert cache.get(ATTENDANCE_STATS_KEY) is None
    assert len(cache) == 0


def test_cache_invalidate_single_key_or_all():
    cache = TTLCache(30, clock=FakeClock())
    cache.set(ATTENDANCE_STATS_KEY, 1)
    cache.set(STUDENT_STATS_KEY, 2)

    cache.invalidate(STUDENT_STATS_KEY)
    assert cache.get(STUDENT_STATS_KEY) is None
    assert cache.get(ATTENDANCE_STATS_KEY) == 1

    cache.invalidate()
    assert len(cache) == 0


# -----------------------------
# Device command queue
# -----------------------------
def test_command_queue_is_fifo_per_device():
    queue = DeviceCommandQueue(300, clock=FakeClock())
    queue.enqueue("scanner-1", "set-mode", mode="exit")
    queue.enqueue("scanner-1", "beep")
    queue.enqueue("scanner-2", "reboot")

    assert queue.pending("scanner-1") == 2
    assert queue.pop_next("scanner-1")["command"] == "set-mode"
    assert queue.pop_next("scanner-1")["command"] == "beep"
    assert queue.pop_next("scanner-1") is None
    assert queue.pop_next("scanner-2")["command"] == "reboot"


def test_command_queue_drops_stale_commands():
    clock = FakeClock()
    queue = DeviceCommandQueue(300, clock=clock)
    queue.enqueue("scanner-1", "old")
    clock.advance(200)
    queue.enqueue("scanner-1", "fresh", params={"volume": 3})
    clock.advance(100)

    assert queue.sweep() == 1
    entry = queue.pop_next("scanner-1")
    assert entry == {"command": "fresh", "mode": None, "params": {"volume": 3}, "timestamp": 1200.0}


def test_status_registry_marks_silent_devices_offline():
    clock = FakeClock()
    registry = DeviceStatusRegistry(300, clock=clock)
    registry.update("scanner-1", {"connected": True, "mode": "entry"})
    clock.advance(250)
    registry.update("scanner-2", {"connected": True})
    clock.advance(100)

    statuses = {s["device_id"]: s for s in registry.list()}
    assert statuses["scanner-1"]["offline"] is True
    assert statuses["scanner-1"]["connected"] is False
    assert statuses["scanner-2"]["connected"] is True
    assert "offline" not in statuses["scanner-2"]


def test_status_registry_forgets_long_idle_devices():
    clock = FakeClock()
    registry = DeviceStatusRegistry(300, forget_after_seconds=3600, clock=clock)
    registry.update("scanner-1", {"connected": True})
    clock.advance(3000)
    registry.update("scanner-2", {"connected": True})
    clock.advance(700)

    assert [s["device_id"] for s in registry.list()] == ["scanner-2"]
    assert len(registry) == 1


# -----------------------------
# Notification hub
# -----------------------------
def test_hub_keeps_bounded_history_newest_first():
    hub = NotificationHub(history_size=3)
    for n in range(5):
        hub.publish(NEW_ATTENDANCE_TOPIC, {"n": n})
    hub.publish(UNKNOWN_CARD_TOPIC, {"rfid_uid": "X"})

    recent = hub.recent(limit=10)
    assert [e["topic"] for e in recent] == [UNKNOWN_CARD_TOPIC, NEW_ATTENDANCE_TOPIC, NEW_ATTENDANCE_TOPIC]
    assert [e["payload"]["n"] for e in hub.recent(topic=NEW_ATTENDANCE_TOPIC)] == [4, 3]


def test_hub_delivers_to_subscribers():
    hub = NotificationHub()

    async def scenario():
        sub_id, queue = hub.subscribe()
        assert hub.subscriber_count == 1
        hub.publish(NEW_ATTENDANCE_TOPIC, {"student_name": "Tariro"})
        event = await asyncio.wait_for(queue.get(), timeout=1)
        hub.unsubscribe(sub_id)
        return event

    event = asyncio.run(scenario())
    assert event["topic"] == NEW_ATTENDANCE_TOPIC
    assert event["payload"] == {"student_name": "Tariro"}
    assert hub.subscriber_count == 0


class ClosedSocket:
    async def send_json(self, data):
        raise RuntimeError("Cannot call send once a close message has been sent.")


def test_failed_forwarder_is_reported_on_disconnect(caplog):
    async def scenario():
        queue = asyncio.Queue()
        queue.put_nowait({"topic": NEW_ATTENDANCE_TOPIC})
        forwarder = asyncio.create_task(_forward_events(ClosedSocket(), queue))
        await asyncio.sleep(0)
        await _stop_forwarder(forwarder, 7)
        return forwarder

    with caplog.at_level(logging.WARNING, logger="backend.routers.notifications"):
        forwarder = asyncio.run(scenario())

    assert forwarder.done()
    assert "subscriber 7 stopped forwarding" in caplog.text


def test_idle_forwarder_stops_quietly(caplog):
    async def scenario():
        forwarder = asyncio.create_task(_forward_events(ClosedSocket(), asyncio.Queue()))
        await asyncio.sleep(0)
        await _stop_forwarder(forwarder, 8)
        return forwarder

    with caplog.at_level(logging.WARNING, logger="backend.routers.notifications"):
        forwarder = asyncio.run(scenario())

    assert forwarder.cancelled()
    assert caplog.text == ""


# -----------------------------
# Exam status rules
# -----------------------------
def test_admin_may_set_any_status():
    check_status_transition("Completed", "Scheduled", role="admin", is_assigned=False)
    check_status_transition("Scheduled", "Cancelled", role="admin", is_assigned=False)


@pytest.mark.parametrize(
    ("current", "target"),
    [("Scheduled", "In Progress"), ("In Progress", "Completed")],
)
def test_assigned_invigilator_may_start_and_complete(current, target):
    check_status_transition(current, target, role="invigilator", is_assigned=True)


@pytest.mark.parametrize(
    ("current", "target", "is_assigned", "status_code"),
    [
        ("Scheduled", "In Progress", False, 403),
        ("Scheduled", "Cancelled", True, 403),
        ("Scheduled", "Completed", True, 409),
        ("Completed", "In Progress", True, 409),
        ("Scheduled", "Finished", True, 400),
    ],
)
def test_invigilator_transition_limits(current, target, is_assigned, status_code):
    with pytest.raises(ExamStatusError) as exc_info:
        check_status_transition(current, target, role="invigilator", is_assigned=is_assigned)
    assert exc_info.value.status_code == status_code


def test_only_scheduled_and_running_exams_are_scannable():
    assert is_scannable("Scheduled")
    assert is_scannable("In Progress")
    assert not any(is_scannable(s) for s in ("Completed", "Cancelled", "Postponed"))
