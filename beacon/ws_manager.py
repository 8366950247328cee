from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Protocol, Set

from fastapi import WebSocket

log = logging.getLogger("beacon.events")


class RoomKind(str, Enum):
    DEVICE = "device"
    OWNER = "owner"


@dataclass(frozen=True)
class RoomKey:
    kind: RoomKind
    id: str

    @classmethod
    def device(cls, device_id: str) -> "RoomKey":
        return cls(RoomKind.DEVICE, str(device_id))

    @classmethod
    def owner(cls, user_id: int | str) -> "RoomKey":
        return cls(RoomKind.OWNER, str(user_id))

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


Sink = Callable[[RoomKey, str, Dict[str, Any]], None]


class EventBus(Protocol):
    async def publish(self, room: RoomKey, event: str, payload: Dict[str, Any]) -> int: ...
    async def subscribe(self, connection: Connection, room: RoomKey) -> None: ...
    async def unsubscribe(self, connection: Connection, room: RoomKey) -> None: ...
    async def disconnect(self, connection: Connection) -> None: ...


class ConnectionManager:
    """Process-local rooms over live websocket connections.

    Delivery is at-most-once: an event published to a room nobody has joined
    is dropped. ``publish`` never raises.
    """

    def __init__(self) -> None:
        self.active_connections: Set[Connection] = set()
        self.rooms: Dict[RoomKey, Set[Connection]] = {}
        self.memberships: Dict[Connection, Set[RoomKey]] = {}
        self.sinks: list[Sink] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)

    async def disconnect(self, connection: Connection):
        async with self._lock:
            self.active_connections.discard(connection)
            for room in self.memberships.pop(connection, set()):
                members = self.rooms.get(room)
                if members is None:
                    continue
                members.discard(connection)
                if not members:
                    del self.rooms[room]

    async def subscribe(self, connection: Connection, room: RoomKey):
        async with self._lock:
            self.active_connections.add(connection)
            self.rooms.setdefault(room, set()).add(connection)
            self.memberships.setdefault(connection, set()).add(room)
        log.info("joined room %s", room)

    async def unsubscribe(self, connection: Connection, room: RoomKey):
        async with self._lock:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self.rooms[room]
            joined = self.memberships.get(connection)
            if joined is not None:
                joined.discard(room)

    def members(self, room: RoomKey) -> Set[Connection]:
        return set(self.rooms.get(room, ()))

    def add_sink(self, sink: Sink) -> None:
        self.sinks.append(sink)

    async def publish(self, room: RoomKey, event: str, payload: Dict[str, Any]) -> int:
        try:
            self._notify_sinks(room, event, payload)
            message = {"event": event, "room": str(room), "data": payload}
            async with self._lock:
                targets = list(self.rooms.get(room, ()))
            if not targets:
                log.debug("no subscribers in %s, dropped %s", room, event)
                return 0
            results = await asyncio.gather(
                *(self._safe_send(ws, message) for ws in targets), return_exceptions=True
            )
            return sum(1 for r in results if r is True)
        except Exception:
            log.exception("publish of %s to %s failed", event, room)
            return 0

    def _notify_sinks(self, room: RoomKey, event: str, payload: Dict[str, Any]):
        for sink in list(self.sinks):
            try:
                sink(room, event, payload)
            except Exception:
                log.exception("event sink failed for %s on %s", event, room)

    async def _safe_send(self, ws: Connection, message: Dict[str, Any]) -> bool:
        try:
            await ws.send_json(message)
            return True
        except Exception as e:
            log.warning("send failed, dropping connection: %s", e)
            await self.disconnect(ws)
            return False
