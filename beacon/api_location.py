from datetime import datetime
from typing import Optional

from dateutil import parser as dtparser
from fastapi import APIRouter, Depends, Query

from .auth import Principal
from .deps import Services, current_principal, get_services
from .errors import NotFoundOrUnauthorized, ValidationError
from .schemas import BatchLocationIn, GeofenceIn, HistoryFilters, LocationIn, geofence_out, location_out

router = APIRouter(prefix="/api/location", tags=["location"])


def _parse_ts(name: str, value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return dtparser.isoparse(value)
    except (ValueError, OverflowError):
        raise ValidationError(f"{name} must be an ISO-8601 timestamp") from None


@router.post("/batch-update")
async def batch_update(
    body: BatchLocationIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    results = await services.ingest.record_batch(body.device_id, principal.user_id, body.locations)
    return {
        "message": "Batch location update processed",
        "results": results,
        "successCount": sum(1 for r in results if r["success"]),
        "errorCount": sum(1 for r in results if not r["success"]),
    }


@router.get("/all")
def all_locations(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    entries = [
        services.ingest.map_entry(device, location, services.presence_window)
        for device, location in services.ingest.latest_for_owner(principal.user_id)
    ]
    return {"devices": entries, "count": len(entries)}


@router.delete("/geofence/{geofence_id}")
def delete_geofence(
    geofence_id: int,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    services.ingest.delete_geofence(geofence_id, principal.user_id)
    return {"message": "Geofence deleted successfully"}


@router.post("/{device_id}/update")
async def update_location(
    device_id: str,
    body: LocationIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    location = await services.ingest.record(device_id, principal.user_id, body)
    return {
        "message": "Location updated successfully",
        "locationId": location.id,
        "timestamp": location.timestamp.isoformat(),
    }


@router.get("/{device_id}/latest")
def latest(
    device_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    device = services.registry.get(device_id, principal.user_id)
    location = services.ingest.latest(device_id, principal.user_id)
    if location is None:
        raise NotFoundOrUnauthorized("No location data found for this device")
    entry = services.ingest.map_entry(device, location, services.presence_window)
    return {"device": entry["device"], "location": entry["location"], "ageSeconds": entry["ageSeconds"]}


@router.get("/{device_id}/history")
def history(
    device_id: str,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    source: str = "all",
    minAccuracy: Optional[float] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    filters = HistoryFilters(
        start=_parse_ts("startDate", startDate),
        end=_parse_ts("endDate", endDate),
        source=source,
        max_accuracy=minAccuracy,
        limit=limit,
    )
    device = services.registry.get(device_id, principal.user_id)
    locations, summary = services.ingest.history(device_id, principal.user_id, filters)
    return {
        "device": {"id": device.device_id, "name": device.name, "model": device.model},
        "locations": [location_out(loc) for loc in locations],
        "summary": summary,
    }


@router.post("/{device_id}/geofence", status_code=201)
def create_geofence(
    device_id: str,
    body: GeofenceIn,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    fence = services.ingest.create_geofence(device_id, principal.user_id, body)
    return {"message": "Geofence created successfully", "geofence": geofence_out(fence)}


@router.get("/{device_id}/geofences")
def list_geofences(
    device_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    device = services.registry.get(device_id, principal.user_id)
    fences = services.ingest.list_geofences(device_id, principal.user_id)
    return {
        "device": {"id": device.device_id, "name": device.name},
        "geofences": [geofence_out(f) for f in fences],
        "count": len(fences),
    }
