from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from sqlmodel import select

from beacon.db import utcnow
from beacon.errors import NotFoundOrUnauthorized, ValidationError
from beacon.models import Command
from beacon.schemas import WIPE_CONFIRMATION, FactoryResetPayload, parse_command_payload
from beacon.ws_manager import RoomKey

from conftest import FakeConnection


@pytest.fixture
def phone(services, alice):
    return services.registry.register_or_update(alice.id, "d1", "Phone")


@pytest.mark.asyncio
async def test_lock_is_written_pending_and_flag_set_before_reply(services, alice, phone) -> None:
    device_room = FakeConnection()
    await services.bus.subscribe(device_room, RoomKey.device("d1"))

    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))

    assert command.status == "pending"
    assert services.registry.get("d1", alice.id).is_locked is True
    [event] = device_room.events("remote-command")
    assert event["data"]["commandId"] == command.id
    assert event["data"]["type"] == "LOCK_DEVICE"
    assert event["data"]["data"] == {"message": "Device locked remotely for security"}


@pytest.mark.asyncio
async def test_alarm_flags_follow_start_and_stop(services, alice, phone) -> None:
    await services.dispatcher.create("d1", alice.id, parse_command_payload("START_ALARM", {"duration": 10}))
    assert services.registry.get("d1", alice.id).alarm_active is True
    await services.dispatcher.create("d1", alice.id, parse_command_payload("STOP_ALARM"))
    assert services.registry.get("d1", alice.id).alarm_active is False


@pytest.mark.asyncio
async def test_create_without_listeners_still_succeeds(services, alice, phone) -> None:
    broken = FakeConnection(fail=True)
    await services.bus.subscribe(broken, RoomKey.device("d1"))

    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("REQUEST_LOCATION"))

    assert command.id is not None
    assert services.bus.members(RoomKey.device("d1")) == set()


@pytest.mark.asyncio
async def test_foreign_device_gets_no_command(services, store, alice, bob, phone) -> None:
    with pytest.raises(NotFoundOrUnauthorized):
        await services.dispatcher.create("d1", bob.id, parse_command_payload("LOCK_DEVICE"))
    with store.session() as s:
        assert s.exec(select(Command)).all() == []
    assert services.registry.get("d1", alice.id).is_locked is False


@pytest.mark.asyncio
async def test_unconfirmed_factory_reset_never_reaches_the_store(services, store, alice, phone) -> None:
    sneaky = FactoryResetPayload.model_construct(confirm_wipe="yes please")
    with pytest.raises(ValidationError, match="Wipe confirmation required"):
        await services.dispatcher.create("d1", alice.id, sneaky)
    with store.session() as s:
        assert s.exec(select(Command)).all() == []


@pytest.mark.asyncio
async def test_confirmed_factory_reset_is_logged_as_critical(services, alice, phone) -> None:
    payload = parse_command_payload("FACTORY_RESET", {"confirmWipe": WIPE_CONFIRMATION})
    command = await services.dispatcher.create("d1", alice.id, payload)
    assert command.command_type == "FACTORY_RESET"
    assert any(r.log_type == "critical_command" for r in services.registry.logs("d1", alice.id))


@pytest.mark.asyncio
async def test_pending_is_fifo_with_increasing_ids(services, alice, phone) -> None:
    kinds = ["LOCK_DEVICE", "REQUEST_LOCATION", "UNLOCK_DEVICE"]
    created = [await services.dispatcher.create("d1", alice.id, parse_command_payload(k)) for k in kinds]

    ids = [c.id for c in created]
    assert ids == sorted(ids) and len(set(ids)) == 3

    pending = services.dispatcher.list_pending("d1", alice.id)
    assert [c.command_type for c in pending] == kinds
    # reading does not mark anything delivered
    assert len(services.dispatcher.list_pending("d1", alice.id)) == 3


@pytest.mark.asyncio
async def test_concurrent_creates_get_increasing_ids_and_fifo_order(services, alice, phone) -> None:
    kinds = ["LOCK_DEVICE", "REQUEST_LOCATION", "START_ALARM", "STOP_ALARM", "UNLOCK_DEVICE"] * 4
    created = await asyncio.gather(
        *(services.dispatcher.create("d1", alice.id, parse_command_payload(k)) for k in kinds)
    )

    ids = [c.id for c in created]
    assert len(set(ids)) == len(kinds)
    pending = services.dispatcher.list_pending("d1", alice.id)
    assert [c.id for c in pending] == sorted(ids)
    sent = [c.sent_at for c in pending]
    assert sent == sorted(sent)


@pytest.mark.asyncio
async def test_resolve_notifies_owner_room(services, alice, phone) -> None:
    owner = FakeConnection()
    await services.bus.subscribe(owner, RoomKey.owner(alice.id))
    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))

    resolved = await services.dispatcher.resolve("d1", alice.id, command.id, "completed", {"locked": True})

    assert resolved.status == "completed"
    assert resolved.executed_at is not None
    assert json.loads(resolved.response) == {"locked": True}
    assert services.dispatcher.list_pending("d1", alice.id) == []
    [event] = owner.events("command-executed")
    assert event["room"] == f"owner:{alice.id}"
    assert event["data"]["commandId"] == command.id
    assert event["data"]["status"] == "completed"


@pytest.mark.asyncio
async def test_second_resolution_overwrites_the_first(services, alice, phone) -> None:
    command = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))

    await services.dispatcher.resolve("d1", alice.id, command.id, "completed", "locked")
    again = await services.dispatcher.resolve("d1", alice.id, command.id, "failed", "screen busy")

    assert again.status == "failed"
    assert again.response == "screen busy"
    [stored] = services.dispatcher.history("d1", alice.id)
    assert stored.status == "failed"


@pytest.mark.asyncio
async def test_failed_report_leaves_the_flag_alone(services, alice, phone) -> None:
    first = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))
    await services.dispatcher.resolve("d1", alice.id, first.id, "completed")
    second = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))

    await services.dispatcher.resolve("d1", alice.id, second.id, "failed", "already locked")

    assert services.registry.get("d1", alice.id).is_locked is True


@pytest.mark.asyncio
async def test_completed_report_confirms_the_flag(services, alice, phone) -> None:
    lock = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))
    # cached flag moved by another write in between
    services.registry.set_lock_flag("d1", False)

    await services.dispatcher.resolve("d1", alice.id, lock.id, "completed")

    assert services.registry.get("d1", alice.id).is_locked is True


@pytest.mark.asyncio
async def test_resolve_rejects_bad_status_and_foreign_commands(services, alice, phone) -> None:
    services.registry.register_or_update(alice.id, "d2", "Tablet")
    command = await services.dispatcher.create("d2", alice.id, parse_command_payload("LOCK_DEVICE"))

    with pytest.raises(ValidationError):
        await services.dispatcher.resolve("d2", alice.id, command.id, "pending")
    with pytest.raises(NotFoundOrUnauthorized, match="Command not found"):
        await services.dispatcher.resolve("d1", alice.id, command.id, "completed")
    with pytest.raises(NotFoundOrUnauthorized, match="Command not found"):
        await services.dispatcher.resolve("d1", alice.id, 9999, "completed")


@pytest.mark.asyncio
async def test_history_filters_by_status(services, alice, phone) -> None:
    first = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))
    await services.dispatcher.create("d1", alice.id, parse_command_payload("UNLOCK_DEVICE"))
    await services.dispatcher.resolve("d1", alice.id, first.id, "completed")

    assert [c.id for c in services.dispatcher.history("d1", alice.id, status="completed")] == [first.id]
    assert len(services.dispatcher.history("d1", alice.id)) == 2
    assert len(services.dispatcher.history("d1", alice.id, limit=1)) == 1


@pytest.mark.asyncio
async def test_batch_reports_each_device(services, alice, bob, phone) -> None:
    services.registry.register_or_update(bob.id, "bobs", "Bob's phone")

    results = await services.dispatcher.batch_create(["d1", "bobs", "ghost"], alice.id, parse_command_payload("LOCK_DEVICE"))

    assert [r.as_dict()["success"] for r in results] == [True, False, False]
    assert results[0].as_dict()["commandId"] is not None
    assert results[1].as_dict() == {"deviceId": "bobs", "success": False, "error": "Device not found or access denied"}
    assert services.registry.get("d1", alice.id).is_locked is True
    assert services.registry.get("bobs", bob.id).is_locked is False


@pytest.mark.asyncio
async def test_summary_counts_commands_by_type_and_status(services, alice, bob, phone) -> None:
    services.registry.register_or_update(bob.id, "bobs", "Bob's phone")
    lock = await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))
    await services.dispatcher.create("d1", alice.id, parse_command_payload("LOCK_DEVICE"))
    locate = await services.dispatcher.create("d1", alice.id, parse_command_payload("REQUEST_LOCATION"))
    await services.dispatcher.create("bobs", bob.id, parse_command_payload("LOCK_DEVICE"))
    await services.dispatcher.resolve("d1", alice.id, lock.id, "completed")
    await services.dispatcher.resolve("d1", alice.id, locate.id, "failed")

    summary = services.dispatcher.summary(alice.id, utcnow() - timedelta(days=7))

    assert summary["total"] == 3
    assert summary["summary"] == {
        "LOCK_DEVICE": {"total": 2, "completed": 1, "pending": 1, "failed": 0},
        "REQUEST_LOCATION": {"total": 1, "completed": 0, "pending": 0, "failed": 1},
    }
    assert services.dispatcher.summary(alice.id, utcnow() + timedelta(minutes=1)) == {"summary": {}, "total": 0}
