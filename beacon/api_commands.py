from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from .auth import Principal
from .deps import Services, current_principal, get_services
from .schemas import BatchCommandIn, CommandType, command_out, parse_command_payload

router = APIRouter(prefix="/api/commands", tags=["commands"])

SENT_MESSAGES = {
    CommandType.LOCK_DEVICE: "Lock command sent successfully",
    CommandType.UNLOCK_DEVICE: "Unlock command sent successfully",
    CommandType.REQUEST_LOCATION: "Location request sent successfully",
    CommandType.START_ALARM: "Alarm start command sent successfully",
    CommandType.STOP_ALARM: "Alarm stop command sent successfully",
    CommandType.FACTORY_RESET: "Factory reset command sent successfully",
}


async def _issue(
    services: Services,
    principal: Principal,
    device_id: str,
    kind: CommandType,
    body: Optional[Dict[str, Any]],
):
    payload = parse_command_payload(kind, body)
    command = await services.dispatcher.create(device_id, principal.user_id, payload)
    out = {
        "message": SENT_MESSAGES[kind],
        "commandId": command.id,
        "deviceId": device_id,
        "status": command.status,
    }
    if kind is CommandType.START_ALARM:
        out["alarmDuration"] = payload.duration
    if kind is CommandType.FACTORY_RESET:
        out["warning"] = "This command will erase all data on the device"
    return out


@router.post("/batch")
async def batch(
    body: BatchCommandIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    # payload problems fail the whole batch before any device is touched
    payload = parse_command_payload(body.command_type, body.payload)
    results = await services.dispatcher.batch_create(body.device_ids, principal.user_id, payload)
    return {
        "message": "Batch command processed",
        "results": [r.as_dict() for r in results],
        "successCount": sum(1 for r in results if r.success),
        "errorCount": sum(1 for r in results if not r.success),
    }


@router.post("/{device_id}/lock", status_code=201)
async def lock(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.LOCK_DEVICE, body)


@router.post("/{device_id}/unlock", status_code=201)
async def unlock(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.UNLOCK_DEVICE, body)


@router.post("/{device_id}/locate", status_code=201)
async def locate(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.REQUEST_LOCATION, body)


@router.post("/{device_id}/alarm/start", status_code=201)
async def start_alarm(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.START_ALARM, body)


@router.post("/{device_id}/alarm/stop", status_code=201)
async def stop_alarm(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.STOP_ALARM, body)


@router.post("/{device_id}/wipe", status_code=201)
async def wipe(
    device_id: str,
    body: Optional[Dict[str, Any]] = Body(None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    return await _issue(services, principal, device_id, CommandType.FACTORY_RESET, body)


@router.get("/{device_id}")
def history(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    status: str = Query("all"),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    commands = services.dispatcher.history(device_id, principal.user_id, limit, status)
    return {"commands": [command_out(c) for c in commands], "count": len(commands)}


@router.get("/{device_id}/pending")
def pending(
    device_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    commands = services.dispatcher.list_pending(device_id, principal.user_id)
    return {"pendingCommands": [command_out(c) for c in commands], "count": len(commands)}
