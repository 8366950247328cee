"""Location samples: ingest, history queries and geofence records.

Geofence *evaluation* belongs to an external hook; this module only stores
the fences and fires the hook for each new sample.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Iterable, Optional, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import or_, select

from .db import Store, to_naive_utc, utcnow
from .errors import NotFoundOrUnauthorized
from .models import Device, Geofence, Location
from .presence import PRESENCE_WINDOW, presence_label
from .registry import DeviceRegistry
from .schemas import GeofenceIn, HistoryFilters, LocationIn, location_out
from .ws_manager import EventBus, RoomKey

log = logging.getLogger("beacon.location")

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # rounding can push a past 1 for near-antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def total_distance_km(samples: Sequence[Location]) -> float:
    """Sum of distances between adjacent samples, in the order given."""
    return sum(
        haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
        for a, b in zip(samples, samples[1:])
    )


def summarize(samples: Sequence[Location]) -> dict[str, Any]:
    """Summary of a newest-first history page."""
    if not samples:
        return {"totalPoints": 0, "timeRange": None, "totalDistanceKm": 0, "averageAccuracy": 0}
    return {
        "totalPoints": len(samples),
        "timeRange": {
            "start": samples[-1].timestamp.isoformat(),
            "end": samples[0].timestamp.isoformat(),
        },
        "totalDistanceKm": round(total_distance_km(samples), 2),
        "averageAccuracy": round(sum(s.accuracy or 0 for s in samples) / len(samples)),
    }


class GeofenceHook(Protocol):
    async def evaluate(self, device_id: str, user_id: int, location: Location) -> None: ...


class NullGeofenceHook:
    async def evaluate(self, device_id: str, user_id: int, location: Location) -> None:
        log.debug("no geofence evaluator configured, skipped sample %s", location.id)


class LocationIngest:
    def __init__(
        self,
        store: Store,
        registry: DeviceRegistry,
        bus: EventBus,
        geofence_hook: Optional[GeofenceHook] = None,
    ):
        self.store = store
        self.registry = registry
        self.bus = bus
        self.geofence_hook = geofence_hook or NullGeofenceHook()
        self._pending_hooks: set[asyncio.Task] = set()

    def _save(self, device_id: str, sample: LocationIn, keep_timestamp: bool) -> Location:
        fields = sample.model_dump(exclude={"timestamp"})
        timestamp = to_naive_utc(sample.timestamp) if keep_timestamp and sample.timestamp else utcnow()
        with self.store.session() as s:
            location = Location(device_id=device_id, timestamp=timestamp, **fields)
            s.add(location)
            s.commit()
            s.refresh(location)
        return location

    def _trigger_geofences(self, device_id: str, user_id: int, location: Location) -> None:
        task = asyncio.ensure_future(self.geofence_hook.evaluate(device_id, user_id, location))
        self._pending_hooks.add(task)
        task.add_done_callback(self._hook_done)

    def _hook_done(self, task: asyncio.Task) -> None:
        self._pending_hooks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("geofence evaluation failed: %s", exc, exc_info=exc)

    async def record(self, device_id: str, user_id: int, sample: LocationIn) -> Location:
        self.registry.get(device_id, user_id)
        location = self._save(device_id, sample, keep_timestamp=False)

        self.registry.touch_last_seen(device_id)
        if sample.battery_level is not None:
            self.registry.set_battery_level(device_id, sample.battery_level)
        self.registry.log_activity(
            device_id,
            "location_update",
            f"Location updated: {sample.latitude}, {sample.longitude} "
            f"(accuracy: {sample.accuracy}m, source: {sample.source})",
        )

        payload = location_out(location)
        await self.bus.publish(
            RoomKey.owner(user_id),
            "location-update",
            {"deviceId": device_id, "location": payload, "timestamp": payload["timestamp"]},
        )
        self._trigger_geofences(device_id, user_id, location)
        return location

    async def record_batch(self, device_id: str, user_id: int, samples: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        """Store buffered samples, each validated on its own."""
        self.registry.get(device_id, user_id)
        results: list[dict[str, Any]] = []
        for raw in samples:
            stamp = raw.get("timestamp") if isinstance(raw, dict) else None
            try:
                sample = LocationIn.model_validate(raw)
            except PydanticValidationError as e:
                err = e.errors()[0]
                field = err["loc"][-1] if err.get("loc") else "sample"
                results.append({"timestamp": stamp, "success": False, "error": f"{field}: {err['msg']}"})
                continue
            try:
                location = self._save(device_id, sample, keep_timestamp=True)
            except Exception as e:
                log.exception("batch sample for %s failed", device_id)
                results.append({"timestamp": stamp, "success": False, "error": str(e) or type(e).__name__})
                continue
            results.append({"timestamp": location.timestamp.isoformat(), "success": True, "locationId": location.id})
            self._trigger_geofences(device_id, user_id, location)

        self.registry.touch_last_seen(device_id)
        ok = sum(1 for r in results if r["success"])
        self.registry.log_activity(device_id, "batch_location_update", f"Batch location update: {ok}/{len(results)} successful")
        return results

    def latest(self, device_id: str, user_id: int) -> Location | None:
        self.registry.get(device_id, user_id)
        return self._latest(device_id)

    def _latest(self, device_id: str) -> Location | None:
        with self.store.session() as s:
            stmt = (
                select(Location)
                .where(Location.device_id == device_id)
                .order_by(Location.timestamp.desc(), Location.id.desc())
                .limit(1)
            )
            return s.exec(stmt).first()

    def latest_for_owner(self, user_id: int) -> list[tuple[Device, Location | None]]:
        return [(d, self._latest(d.device_id)) for d in self.registry.list_by_owner(user_id)]

    def map_entry(self, device: Device, location: Location | None, window: timedelta = PRESENCE_WINDOW) -> dict[str, Any]:
        now = utcnow()
        return {
            "device": {
                "id": device.device_id,
                "name": device.name,
                "model": device.model,
                "status": device.status,
                "batteryLevel": device.battery_level,
                "isLocked": device.is_locked,
                "presence": presence_label(device.last_seen, now, window),
            },
            "location": location_out(location) if location else None,
            "ageSeconds": (now - location.timestamp).total_seconds() if location else None,
        }

    def history(self, device_id: str, user_id: int, filters: HistoryFilters) -> tuple[list[Location], dict[str, Any]]:
        self.registry.get(device_id, user_id)
        with self.store.session() as s:
            stmt = select(Location).where(Location.device_id == device_id)
            if filters.start is not None:
                stmt = stmt.where(Location.timestamp >= to_naive_utc(filters.start))
            if filters.end is not None:
                stmt = stmt.where(Location.timestamp <= to_naive_utc(filters.end))
            if filters.source != "all":
                stmt = stmt.where(Location.source == filters.source)
            if filters.max_accuracy is not None:
                stmt = stmt.where(or_(Location.accuracy == None, Location.accuracy <= filters.max_accuracy))  # noqa: E711
            stmt = stmt.order_by(Location.timestamp.desc(), Location.id.desc()).limit(filters.limit)
            samples = list(s.exec(stmt).all())
        return samples, summarize(samples)

    # ---------------- geofences ----------------

    def create_geofence(self, device_id: str, user_id: int, body: GeofenceIn) -> Geofence:
        self.registry.get(device_id, user_id)
        with self.store.session() as s:
            fence = Geofence(
                device_id=device_id,
                user_id=user_id,
                name=body.name,
                center_latitude=body.center_latitude,
                center_longitude=body.center_longitude,
                radius_meters=body.radius,
                alert_type=body.alert_type,
            )
            s.add(fence)
            s.commit()
            s.refresh(fence)
        self.registry.log_activity(device_id, "geofence_created", f'Geofence "{body.name}" created with {body.radius}m radius')
        return fence

    def list_geofences(self, device_id: str, user_id: int) -> list[Geofence]:
        self.registry.get(device_id, user_id)
        with self.store.session() as s:
            stmt = (
                select(Geofence)
                .where(Geofence.device_id == device_id, Geofence.is_active == True)  # noqa: E712
                .order_by(Geofence.created_at.desc(), Geofence.id.desc())
            )
            return list(s.exec(stmt).all())

    def delete_geofence(self, geofence_id: int, user_id: int) -> Geofence:
        with self.store.session() as s:
            fence = s.get(Geofence, geofence_id)
            if fence is None or fence.user_id != user_id or not fence.is_active:
                raise NotFoundOrUnauthorized("Geofence not found")
            fence.is_active = False
            s.add(fence)
            s.commit()
            s.refresh(fence)
        self.registry.log_activity(fence.device_id, "geofence_deleted", f'Geofence "{fence.name}" deleted')
        return fence

