"""Authoritative record of devices and their cached control flags."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import select

from .db import Store, utcnow
from .errors import ConflictError, NotFoundOrUnauthorized
from .models import Command, Device, DeviceLog, Geofence, Location
from .schemas import device_out
from .ws_manager import EventBus, RoomKey

log = logging.getLogger("beacon.registry")

ACTIVE_WINDOW = timedelta(hours=1)


class DeviceRegistry:
    def __init__(self, store: Store, bus: EventBus | None = None):
        self.store = store
        self.bus = bus

    # ---------------- reads ----------------

    def get(self, device_id: str, user_id: int) -> Device:
        """Return the device if ``user_id`` owns it.

        A missing device and another user's device raise the same
        :class:`NotFoundOrUnauthorized`.
        """
        with self.store.session() as s:
            device = s.get(Device, device_id)
        if device is None or device.user_id != user_id:
            raise NotFoundOrUnauthorized()
        return device

    def list_by_owner(self, user_id: int) -> list[Device]:
        with self.store.session() as s:
            stmt = select(Device).where(Device.user_id == user_id).order_by(Device.last_seen.desc())
            return list(s.exec(stmt).all())

    def logs(self, device_id: str, user_id: int, limit: int = 50) -> list[DeviceLog]:
        self.get(device_id, user_id)
        with self.store.session() as s:
            stmt = (
                select(DeviceLog)
                .where(DeviceLog.device_id == device_id)
                .order_by(DeviceLog.timestamp.desc(), DeviceLog.id.desc())
                .limit(limit)
            )
            return list(s.exec(stmt).all())

    def statistics(self, user_id: int, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        devices = self.list_by_owner(user_id)
        active = sum(1 for d in devices if now - d.last_seen <= ACTIVE_WINDOW)
        return {
            "total": len(devices),
            "active": active,
            "locked": sum(1 for d in devices if d.is_locked),
            "offline": len(devices) - active,
        }

    def recent_activity(self, user_id: int, since: datetime, limit: int = 20) -> list[tuple[DeviceLog, str]]:
        """Newest audit entries across the user's devices, with each device's name."""
        with self.store.session() as s:
            stmt = (
                select(DeviceLog, Device.name)
                .join(Device, Device.device_id == DeviceLog.device_id)
                .where(Device.user_id == user_id, DeviceLog.timestamp >= since)
                .order_by(DeviceLog.timestamp.desc(), DeviceLog.id.desc())
                .limit(limit)
            )
            return [(entry, name) for entry, name in s.exec(stmt).all()]

    # ---------------- writes ----------------

    def register_or_update(
        self,
        user_id: int,
        device_id: str,
        name: str,
        model: str | None = None,
        platform_version: str | None = None,
    ) -> Device:
        """Idempotent upsert keyed by ``device_id``; refreshes ``last_seen``."""
        with self.store.session() as s:
            device = s.get(Device, device_id)
            if device is not None and device.user_id != user_id:
                raise ConflictError("Device ID already registered to another account")
            if device is None:
                device = Device(device_id=device_id, user_id=user_id, name=name)
            device.name = name
            device.model = model or "Unknown"
            device.platform_version = platform_version or "Unknown"
            device.status = "active"
            device.last_seen = utcnow()
            s.add(device)
            s.commit()
            s.refresh(device)
        self.log_activity(device_id, "registration", f"Device registered: {name}")
        return device

    def _update(self, device_id: str, **fields: Any) -> Device | None:
        with self.store.session() as s:
            device = s.get(Device, device_id)
            if device is None:
                return None
            for key, value in fields.items():
                setattr(device, key, value)
            s.add(device)
            s.commit()
            s.refresh(device)
            return device

    def set_lock_flag(self, device_id: str, locked: bool) -> Device | None:
        return self._update(device_id, is_locked=locked)

    def set_alarm_flag(self, device_id: str, active: bool) -> Device | None:
        return self._update(device_id, alarm_active=active)

    def set_battery_level(self, device_id: str, level: int) -> Device | None:
        return self._update(device_id, battery_level=level)

    def touch_last_seen(self, device_id: str, when: datetime | None = None) -> Device | None:
        return self._update(device_id, last_seen=when or utcnow())

    def log_activity(self, device_id: str, log_type: str, message: str) -> None:
        with self.store.session() as s:
            s.add(DeviceLog(device_id=device_id, log_type=log_type, message=message))
            s.commit()

    async def heartbeat(
        self,
        device_id: str,
        user_id: int,
        status: str = "active",
        battery_level: int | None = None,
        network_type: str | None = None,
    ) -> Device:
        self.get(device_id, user_id)
        fields: dict[str, Any] = {"status": status, "last_seen": utcnow()}
        if battery_level is not None:
            fields["battery_level"] = battery_level
        if network_type is not None:
            fields["network_type"] = network_type
        device = self._update(device_id, **fields)
        if device is None:
            # removed between the ownership check and the write
            raise NotFoundOrUnauthorized()
        battery = f"{battery_level}%" if battery_level is not None else "unknown"
        self.log_activity(
            device_id, "heartbeat", f"Status: {status}, Battery: {battery}, Network: {network_type or 'unknown'}"
        )
        if self.bus is not None:
            await self.bus.publish(
                RoomKey.owner(user_id),
                "device-status",
                {"deviceId": device_id, "device": device_out(device)},
            )
        return device

    def delete(self, device_id: str, user_id: int) -> None:
        """Remove the device with its commands, locations, logs and geofences."""
        self.get(device_id, user_id)
        with self.store.session() as s:
            for table in (Command, Location, DeviceLog, Geofence):
                for row in s.exec(select(table).where(table.device_id == device_id)).all():
                    s.delete(row)
            device = s.get(Device, device_id)
            if device is not None:
                s.delete(device)
            s.commit()
        log.info("device %s removed by user %s", device_id, user_id)
