from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from beacon.mqtt_handler import DeviceMessage, MqttCommandRelay, handle_device_message, parse_device_message
from beacon.schemas import parse_command_payload
from beacon.ws_manager import RoomKey


class FakeMqttClient:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict, int]] = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, json.loads(payload), qos))
        return SimpleNamespace(rc=0)


def test_parse_device_topics() -> None:
    msg = parse_device_message("beacon/d1/heartbeat", b'{"apiKey": "k", "batteryLevel": 40}', "beacon")
    assert msg == DeviceMessage(device_id="d1", kind="heartbeat", api_key="k", payload={"batteryLevel": 40})

    msg = parse_device_message("beacon/d1/location", b'{"api_key": "k", "latitude": 1}', "beacon")
    assert msg.api_key == "k"
    assert msg.payload == {"latitude": 1}


@pytest.mark.parametrize(
    "topic, raw",
    [
        ("other/d1/heartbeat", b"{}"),
        ("beacon/d1/command", b"{}"),
        ("beacon/d1/heartbeat/extra", b"{}"),
        ("beacon/d1/heartbeat", b"not json"),
        ("beacon/d1/heartbeat", b"[1, 2]"),
    ],
)
def test_foreign_or_malformed_messages_are_ignored(topic, raw) -> None:
    assert parse_device_message(topic, raw, "beacon") is None


def test_relay_mirrors_only_device_commands() -> None:
    client = FakeMqttClient()
    relay = MqttCommandRelay(client, "beacon")

    relay(RoomKey.device("d1"), "remote-command", {"commandId": 1})
    relay(RoomKey.owner(1), "remote-command", {"commandId": 2})
    relay(RoomKey.device("d1"), "location-update", {})

    assert client.published == [("beacon/d1/command", {"commandId": 1}, 1)]


@pytest.mark.asyncio
async def test_commands_reach_the_broker_through_the_bus(services, alice) -> None:
    client = FakeMqttClient()
    services.bus.add_sink(MqttCommandRelay(client, "beacon"))
    services.registry.register_or_update(alice.id, "d1", "Phone")

    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("REQUEST_LOCATION"))

    [(topic, body, _)] = client.published
    assert topic == "beacon/d1/command"
    assert body["commandId"] == command.id
    assert body["data"] == {"highAccuracy": True}


@pytest.mark.asyncio
async def test_broker_messages_drive_the_same_operations(services, alice) -> None:
    services.registry.register_or_update(alice.id, "d1", "Phone")
    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))

    await handle_device_message(DeviceMessage("d1", "heartbeat", alice.api_key, {"batteryLevel": 12}), services)
    await handle_device_message(DeviceMessage("d1", "location", alice.api_key, {"latitude": 3, "longitude": 4}), services)
    await handle_device_message(
        DeviceMessage("d1", "command-response", alice.api_key, {"commandId": command.id, "status": "completed"}),
        services,
    )

    assert services.registry.get("d1", alice.id).battery_level == 12
    assert services.ingest.latest("d1", alice.id).longitude == 4
    assert services.dispatcher.history("d1", alice.id)[0].status == "completed"


@pytest.mark.asyncio
async def test_rejected_broker_messages_are_dropped(services, alice) -> None:
    services.registry.register_or_update(alice.id, "d1", "Phone")

    await handle_device_message(DeviceMessage("d1", "heartbeat", "wrong-key", {"batteryLevel": 12}), services)
    await handle_device_message(DeviceMessage("d1", "location", alice.api_key, {"latitude": 300, "longitude": 4}), services)

    assert services.registry.get("d1", alice.id).battery_level is None
    assert services.ingest.latest("d1", alice.id) is None
