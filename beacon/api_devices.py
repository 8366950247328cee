from fastapi import APIRouter, Depends, Query

from .auth import Principal
from .db import utcnow
from .deps import Services, current_principal, get_services
from .schemas import CommandResponseIn, DeviceRegisterIn, HeartbeatIn, command_out, device_out, location_out, log_out

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.post("/register", status_code=201)
def register_device(
    body: DeviceRegisterIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    device = services.registry.register_or_update(
        principal.user_id, body.device_id, body.device_name, body.model, body.platform_version
    )
    return {"message": "Device registered successfully", "deviceId": device.device_id, "status": device.status}


@router.get("")
def list_devices(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    now = utcnow()
    out = []
    for device, location in services.ingest.latest_for_owner(principal.user_id):
        view = device_out(device, now, services.presence_window)
        view["lastLocation"] = location_out(location) if location else None
        out.append(view)
    return {"devices": out, "count": len(out)}


@router.get("/stats/overview")
def statistics(principal: Principal = Depends(current_principal), services: Services = Depends(get_services)):
    return {"statistics": services.registry.statistics(principal.user_id), "timestamp": utcnow().isoformat()}


@router.get("/{device_id}")
def get_device(
    device_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    device = services.registry.get(device_id, principal.user_id)
    location = services.ingest.latest(device_id, principal.user_id)
    view = device_out(device, window=services.presence_window)
    view["lastLocation"] = location_out(location) if location else None
    view["recentLogs"] = [log_out(r) for r in services.registry.logs(device_id, principal.user_id, 10)]
    return view


@router.delete("/{device_id}")
def delete_device(
    device_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    services.registry.delete(device_id, principal.user_id)
    return {"message": "Device removed successfully", "deviceId": device_id}


@router.post("/{device_id}/heartbeat")
async def heartbeat(
    device_id: str,
    body: HeartbeatIn | None = None,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    body = body or HeartbeatIn()
    await services.registry.heartbeat(device_id, principal.user_id, body.status, body.battery_level, body.network_type)
    pending = services.dispatcher.list_pending(device_id, principal.user_id)
    return {
        "message": "Heartbeat received",
        "pendingCommands": [command_out(c) for c in pending],
        "timestamp": utcnow().isoformat(),
    }


@router.post("/{device_id}/command-response")
async def command_response(
    device_id: str,
    body: CommandResponseIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    response = body.response if body.response is not None else body.error
    command = await services.dispatcher.resolve(device_id, principal.user_id, body.command_id, body.status, response)
    return {"message": "Command response received", "commandId": command.id, "status": command.status}


@router.get("/{device_id}/logs")
def device_logs(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    logs = services.registry.logs(device_id, principal.user_id, limit)
    return {"logs": [log_out(r) for r in logs], "count": len(logs)}
