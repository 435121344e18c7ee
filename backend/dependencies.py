from fastapi import Request

from backend import config
from backend.services.device_commands import DeviceCommandQueue, DeviceStatusRegistry
from backend.services.notifications import NotificationHub
from backend.services.reconciler import ScanReconciler
from backend.services.stats_cache import TTLCache
from database.stores import SqliteAttendanceLedger, SqliteDirectoryStore


def get_stats_cache(request: Request) -> TTLCache:
    return request.app.state.stats_cache


def get_notifications(request: Request) -> NotificationHub:
    return request.app.state.notifications


def get_device_commands(request: Request) -> DeviceCommandQueue:
    return request.app.state.device_commands


def get_device_statuses(request: Request) -> DeviceStatusRegistry:
    return request.app.state.device_statuses


def get_reconciler(request: Request) -> ScanReconciler:
    state = request.app.state
    return ScanReconciler(
        SqliteDirectoryStore(),
        SqliteAttendanceLedger(),
        state.notifications,
        state.stats_cache,
        tz=config.TIMEZONE,
        max_conflict_retries=config.SCAN_CONFLICT_RETRIES,
    )
