import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from backend.dependencies import get_device_commands, get_device_statuses, get_notifications
from backend.security import require_device, require_scanner, require_session
from backend.services.device_commands import DeviceCommandQueue, DeviceStatusRegistry
from backend.services.notifications import SCANNER_STATUS_TOPIC, NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter()


class DeviceCommand(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    command: str
    mode: str | None = None
    params: dict[str, Any] | None = None


class DeviceStatusReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    device_id: str = Field(alias="deviceId")


def _queue_command(payload: DeviceCommand, queue: DeviceCommandQueue) -> dict:
    device_id = payload.device_id.strip()
    command = payload.command.strip()
    if not device_id or not command:
        raise HTTPException(status_code=400, detail="Device ID and command required.")

    entry = queue.enqueue(device_id, command, mode=payload.mode, params=payload.params)
    logger.info("Command %s queued for device %s", command, device_id)
    return entry


@router.get("/scanner/commands")
def next_command(
    device_id: str = Query(alias="deviceId"),
    _device: dict = Depends(require_device),
    queue: DeviceCommandQueue = Depends(get_device_commands),
):
    entry = queue.pop_next(device_id.strip())
    if entry is None:
        return Response(status_code=204)
    return entry


@router.post("/scanner/commands")
def add_command(
    payload: DeviceCommand,
    _scanner: dict = Depends(require_scanner),
    queue: DeviceCommandQueue = Depends(get_device_commands),
):
    entry = _queue_command(payload, queue)
    return {"success": True, "message": "Command queued", "command": entry}


@router.post("/scanner/send-command")
def send_command(
    payload: DeviceCommand,
    _session: dict = Depends(require_session),
    queue: DeviceCommandQueue = Depends(get_device_commands),
):
    entry = _queue_command(payload, queue)
    return {"success": True, "message": "Command sent to device", "command": entry}


@router.post("/scanner/status")
def report_status(
    payload: DeviceStatusReport,
    _device: dict = Depends(require_device),
    registry: DeviceStatusRegistry = Depends(get_device_statuses),
    notifications: NotificationHub = Depends(get_notifications),
):
    device_id = payload.device_id.strip()
    if not device_id:
        raise HTTPException(status_code=400, detail="Device ID required.")

    record = registry.update(device_id, payload.model_dump(exclude={"device_id"}))
    notifications.publish(SCANNER_STATUS_TOPIC, record)
    return {"success": True, "message": "Status updated"}


@router.get("/scanner/status")
def device_statuses(
    _session: dict = Depends(require_session),
    registry: DeviceStatusRegistry = Depends(get_device_statuses),
):
    return registry.list()
