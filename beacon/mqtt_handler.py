"""MQTT bridge for devices that talk to the broker instead of HTTP.

Inbound topics: ``{base}/{deviceId}/heartbeat|location|command-response``,
JSON payloads carrying the device's ``apiKey``. Outbound: every
``remote-command`` pushed to a device room is mirrored to
``{base}/{deviceId}/command``.
"""
from __future__ import annotations

import asyncio
import json
import time
import logging
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import TYPE_CHECKING, Any, Dict

import paho.mqtt.client as mqtt
from pydantic import ValidationError as PydanticValidationError

from .db import utcnow
from .errors import BeaconError
from .schemas import CommandResponseIn, HeartbeatIn, LocationIn
from .settings import Settings
from .ws_manager import RoomKey, RoomKind

if TYPE_CHECKING:
    from .deps import Services

log = logging.getLogger("beacon.mqtt")

DEVICE_SUFFIXES = ("heartbeat", "location", "command-response")


@dataclass
class DeviceMessage:
    device_id: str
    kind: str
    api_key: str | None
    payload: Dict[str, Any] = field(default_factory=dict)


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1


def parse_device_message(topic: str, raw: bytes, topic_base: str) -> DeviceMessage | None:
    """Decode a device topic + payload; None for anything that is not ours."""
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != topic_base or parts[2] not in DEVICE_SUFFIXES:
        return None
    try:
        payload = json.loads(raw.decode("utf-8")) if raw else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        log.warning("dropping undecodable payload on %s", topic)
        return None
    if not isinstance(payload, dict):
        return None
    api_key = payload.pop("apiKey", None) or payload.pop("api_key", None)
    return DeviceMessage(device_id=parts[1], kind=parts[2], api_key=api_key, payload=payload)


class MqttCommandRelay:
    """Event-bus sink that forwards device-room commands to the broker."""

    def __init__(self, client, topic_base: str):
        self.client = client
        self.topic_base = topic_base

    def __call__(self, room: RoomKey, event: str, payload: Dict[str, Any]) -> None:
        if room.kind is not RoomKind.DEVICE or event != "remote-command":
            return
        topic = f"{self.topic_base}/{room.id}/command"
        info = self.client.publish(topic, json.dumps(payload), qos=1, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.warning("publish to %s rc=%s", topic, info.rc)


def start_mqtt(message_queue: Queue, settings: Settings):
    client = mqtt.Client(
        client_id=f"beacon-api-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)  # paho internal logs → beacon.mqtt

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.error("connect failed rc=%s (5=Not authorized), retrying", rc)
            return
        for suffix in DEVICE_SUFFIXES:
            topic = f"{settings.mqtt_topic_base}/+/{suffix}"
            res, mid = client.subscribe(topic, qos=1)
            log.info("connected, SUB %s res=%s mid=%s", topic, res, mid)

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("disconnected rc=%s, reconnecting", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        # runs on paho's network thread; the event loop drains the queue
        try:
            parsed = parse_device_message(msg.topic, msg.payload, settings.mqtt_topic_base)
            if parsed is not None:
                message_queue.put(parsed)
        except Exception:
            log.exception("on_message error for %s", msg.topic)

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host,
        settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>",
        settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client


async def handle_device_message(msg: DeviceMessage, services: "Services") -> None:
    """Replay a broker message through the same operations as the HTTP routes."""
    try:
        principal = services.authenticator.authenticate(api_key=msg.api_key)
        if msg.kind == "heartbeat":
            beat = HeartbeatIn.model_validate(msg.payload)
            await services.registry.heartbeat(
                msg.device_id, principal.user_id, beat.status, beat.battery_level, beat.network_type
            )
        elif msg.kind == "location":
            await services.ingest.record(msg.device_id, principal.user_id, LocationIn.model_validate(msg.payload))
        elif msg.kind == "command-response":
            body = CommandResponseIn.model_validate(msg.payload)
            response = body.response if body.response is not None else body.error
            await services.dispatcher.resolve(msg.device_id, principal.user_id, body.command_id, body.status, response)
    except BeaconError as e:
        log.warning("rejected %s from %s: %s", msg.kind, msg.device_id, e.message)
    except PydanticValidationError as e:
        log.warning("invalid %s from %s: %s", msg.kind, msg.device_id, e.errors()[0].get("msg"))


async def queue_forwarder(message_queue: Queue, services: "Services"):
    while True:
        try:
            msg = message_queue.get_nowait()
        except Empty:
            await asyncio.sleep(0.1)
            continue
        try:
            await handle_device_message(msg, services)
        except Exception:
            log.exception("failed handling %s at %s", msg.kind, utcnow().isoformat())
