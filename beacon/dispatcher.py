"""Creation, queuing and resolution of remote commands.

A command is written ``pending``, pushed once to the device room and then
left for the device to pick up: either live over the push channel or later
through :meth:`CommandDispatcher.list_pending`. Only the device moves it to a
terminal status. Nothing expires a pending command.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlmodel import func, select

from .db import Store, utcnow
from .errors import BeaconError, NotFoundOrUnauthorized, ValidationError
from .models import Command
from .registry import DeviceRegistry
from .schemas import CommandPayload, CommandStatus, CommandType, encode_command_payload, parse_command_payload
from .ws_manager import EventBus, RoomKey

log = logging.getLogger("beacon.dispatcher")

# cached flag each command type moves, and the value it moves it to
OPTIMISTIC_FLAGS: dict[CommandType, tuple[str, bool]] = {
    CommandType.LOCK_DEVICE: ("is_locked", True),
    CommandType.UNLOCK_DEVICE: ("is_locked", False),
    CommandType.START_ALARM: ("alarm_active", True),
    CommandType.STOP_ALARM: ("alarm_active", False),
}

TERMINAL_STATUSES = (CommandStatus.COMPLETED.value, CommandStatus.FAILED.value)


@dataclass
class BatchResult:
    device_id: str
    success: bool
    command_id: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"deviceId": self.device_id, "success": self.success}
        if self.success:
            out["commandId"] = self.command_id
        else:
            out["error"] = self.error
        return out


def _encode_response(response: Any) -> str | None:
    if response is None or isinstance(response, str):
        return response
    return json.dumps(response)


class CommandDispatcher:
    def __init__(self, store: Store, registry: DeviceRegistry, bus: EventBus):
        self.store = store
        self.registry = registry
        self.bus = bus

    def _apply_flag(self, device_id: str, command_type: CommandType) -> None:
        flag = OPTIMISTIC_FLAGS.get(command_type)
        if flag is None:
            return
        name, value = flag
        if name == "is_locked":
            self.registry.set_lock_flag(device_id, value)
        else:
            self.registry.set_alarm_flag(device_id, value)

    async def create(self, device_id: str, user_id: int, payload: CommandPayload) -> Command:
        """Write a pending command, update cached flags, and push it to the device room.

        The flag update is optimistic: the registry reflects the intent until
        the device answers through :meth:`resolve`.
        """
        command_type = CommandType(payload.type)
        if command_type is CommandType.FACTORY_RESET:
            # a FactoryResetPayload only validates with the confirmation token,
            # re-parse so a hand-built instance cannot skip it
            payload = parse_command_payload(command_type, payload.model_dump(by_alias=True))

        self.registry.get(device_id, user_id)

        with self.store.session() as s:
            command = Command(
                device_id=device_id,
                user_id=user_id,
                command_type=command_type.value,
                command_data=encode_command_payload(payload),
                status=CommandStatus.PENDING.value,
                sent_at=utcnow(),
            )
            s.add(command)
            s.commit()
            s.refresh(command)

        self._apply_flag(device_id, command_type)

        if command_type is CommandType.FACTORY_RESET:
            self.registry.log_activity(
                device_id, "critical_command", f"FACTORY RESET command sent - Command ID: {command.id} - USER: {user_id}"
            )
            log.warning("factory reset %s issued for %s by user %s", command.id, device_id, user_id)
        else:
            self.registry.log_activity(
                device_id, "command_sent", f"{command_type.value} command sent - Command ID: {command.id}"
            )
            log.info("command %s %s sent to %s", command.id, command_type.value, device_id)

        await self.bus.publish(
            RoomKey.device(device_id),
            "remote-command",
            {
                "commandId": command.id,
                "type": command_type.value,
                "data": payload.push_data(),
                "timestamp": command.sent_at.isoformat(),
            },
        )
        return command

    async def resolve(
        self,
        device_id: str,
        user_id: int,
        command_id: int,
        status: str,
        response: Any = None,
    ) -> Command:
        """Record the device's answer to a command.

        A second answer for the same command overwrites the first.
        """
        if status not in TERMINAL_STATUSES:
            raise ValidationError("Status must be 'completed' or 'failed'")
        self.registry.get(device_id, user_id)

        with self.store.session() as s:
            command = s.get(Command, command_id)
            if command is None or command.device_id != device_id:
                raise NotFoundOrUnauthorized("Command not found")
            command.status = status
            command.response = _encode_response(response)
            command.executed_at = utcnow()
            s.add(command)
            s.commit()
            s.refresh(command)

        # only a completed report moves the flag
        if status == CommandStatus.COMPLETED.value:
            self._apply_flag(device_id, CommandType(command.command_type))

        self.registry.log_activity(
            device_id, "command_response", f"Command {command_id} {status}: {command.response or 'No details'}"
        )
        log.info("command %s on %s resolved %s", command_id, device_id, status)

        await self.bus.publish(
            RoomKey.owner(user_id),
            "command-executed",
            {
                "deviceId": device_id,
                "commandId": command.id,
                "status": status,
                "response": command.response,
                "timestamp": command.executed_at.isoformat(),
            },
        )
        return command

    def list_pending(self, device_id: str, user_id: int) -> list[Command]:
        """Pending commands for the device, oldest first. Reading does not mark delivery."""
        self.registry.get(device_id, user_id)
        with self.store.session() as s:
            stmt = (
                select(Command)
                .where(Command.device_id == device_id, Command.status == CommandStatus.PENDING.value)
                .order_by(Command.sent_at.asc(), Command.id.asc())
            )
            return list(s.exec(stmt).all())

    def history(self, device_id: str, user_id: int, limit: int = 50, status: str = "all") -> list[Command]:
        self.registry.get(device_id, user_id)
        with self.store.session() as s:
            stmt = select(Command).where(Command.device_id == device_id)
            if status != "all":
                stmt = stmt.where(Command.status == status)
            stmt = stmt.order_by(Command.sent_at.desc(), Command.id.desc()).limit(limit)
            return list(s.exec(stmt).all())

    def summary(self, user_id: int, since: datetime) -> dict[str, Any]:
        """Per-type counts by status for commands the user issued since ``since``."""
        with self.store.session() as s:
            stmt = (
                select(Command.command_type, Command.status, func.count(Command.id))
                .where(Command.user_id == user_id, Command.sent_at >= since)
                .group_by(Command.command_type, Command.status)
            )
            rows = s.exec(stmt).all()
        by_type: dict[str, dict[str, int]] = {}
        for command_type, status, count in rows:
            entry = by_type.setdefault(command_type, {"total": 0, "completed": 0, "pending": 0, "failed": 0})
            entry["total"] += count
            entry[status] = count
        return {"summary": by_type, "total": sum(e["total"] for e in by_type.values())}

    async def batch_create(self, device_ids: Iterable[str], user_id: int, payload: CommandPayload) -> list[BatchResult]:
        """Issue the same command to each device independently.

        A failure on one device is recorded in its result and does not stop
        the rest; commands already written stay written.
        """
        results: list[BatchResult] = []
        for device_id in device_ids:
            try:
                command = await self.create(device_id, user_id, payload)
            except NotFoundOrUnauthorized:
                results.append(BatchResult(device_id, False, error="Device not found or access denied"))
            except BeaconError as e:
                results.append(BatchResult(device_id, False, error=e.message))
            except Exception as e:
                log.exception("batch command for %s failed", device_id)
                results.append(BatchResult(device_id, False, error=str(e) or type(e).__name__))
            else:
                results.append(BatchResult(device_id, True, command_id=command.id))
        log.info(
            "batch %s: %d ok, %d failed",
            payload.type,
            sum(1 for r in results if r.success),
            sum(1 for r in results if not r.success),
        )
        return results
