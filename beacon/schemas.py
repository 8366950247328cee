import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .models import Command, Device, DeviceLog, Geofence, Location
from .presence import PRESENCE_WINDOW, is_online

WIPE_CONFIRMATION = "CONFIRM_FACTORY_RESET"


class CommandType(str, Enum):
    LOCK_DEVICE = "LOCK_DEVICE"
    UNLOCK_DEVICE = "UNLOCK_DEVICE"
    REQUEST_LOCATION = "REQUEST_LOCATION"
    START_ALARM = "START_ALARM"
    STOP_ALARM = "STOP_ALARM"
    FACTORY_RESET = "FACTORY_RESET"


class CommandStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------- command payloads ----------------

class _CommandPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    def push_data(self) -> dict[str, Any]:
        """Fields sent to the device as the ``data`` of a remote-command event."""
        return self.model_dump(by_alias=True, exclude={"type"})

class LockPayload(_CommandPayload):
    type: Literal["LOCK_DEVICE"] = "LOCK_DEVICE"
    message: str = "Device locked remotely for security"

class UnlockPayload(_CommandPayload):
    type: Literal["UNLOCK_DEVICE"] = "UNLOCK_DEVICE"

class LocatePayload(_CommandPayload):
    type: Literal["REQUEST_LOCATION"] = "REQUEST_LOCATION"
    high_accuracy: bool = Field(default=True, alias="highAccuracy")

class StartAlarmPayload(_CommandPayload):
    type: Literal["START_ALARM"] = "START_ALARM"
    duration: int = Field(default=30, gt=0)
    volume: int = Field(default=100, ge=0, le=100)
    message: str = "Security Alert - Device Alarm Activated"

class StopAlarmPayload(_CommandPayload):
    type: Literal["STOP_ALARM"] = "STOP_ALARM"

class FactoryResetPayload(_CommandPayload):
    type: Literal["FACTORY_RESET"] = "FACTORY_RESET"
    confirm_wipe: str = Field(default="", alias="confirmWipe", validate_default=True)

    @field_validator("confirm_wipe")
    @classmethod
    def _require_confirmation(cls, value: str) -> str:
        if value != WIPE_CONFIRMATION:
            raise ValueError(f"Wipe confirmation required. Set confirmWipe to {WIPE_CONFIRMATION}")
        return value

    def push_data(self) -> dict[str, Any]:
        return {"confirmed": True}


CommandPayload = Annotated[
    Union[LockPayload, UnlockPayload, LocatePayload, StartAlarmPayload, StopAlarmPayload, FactoryResetPayload],
    Field(discriminator="type"),
]
_payload_adapter: TypeAdapter[CommandPayload] = TypeAdapter(CommandPayload)


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    msg = str(err.get("msg", "Invalid payload")).removeprefix("Value error, ")
    loc = str(err["loc"][-1]) if err.get("loc") else ""
    return f"{loc}: {msg}" if loc and err.get("type") != "value_error" else msg


def parse_command_payload(command_type: str | CommandType, data: dict[str, Any] | None = None) -> CommandPayload:
    """Build the typed payload for ``command_type`` from a loose JSON body."""
    try:
        kind = CommandType(command_type)
    except ValueError:
        raise ValidationError(f"Unknown command type: {command_type}") from None
    body = dict(data or {})
    body["type"] = kind.value
    try:
        return _payload_adapter.validate_python(body)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e)) from e


def encode_command_payload(payload: CommandPayload) -> str:
    return payload.model_dump_json(by_alias=True)


def decode_command_payload(command: Command) -> CommandPayload:
    data = json.loads(command.command_data) if command.command_data else {}
    return parse_command_payload(command.command_type, data)


# ---------------- request bodies ----------------

class DeviceRegisterIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: str = Field(min_length=1, validation_alias=AliasChoices("deviceId", "device_id"))
    device_name: str = Field(min_length=1, validation_alias=AliasChoices("deviceName", "device_name", "name"))
    model: str | None = Field(default=None, validation_alias=AliasChoices("deviceModel", "model"))
    platform_version: str | None = Field(
        default=None, validation_alias=AliasChoices("platformVersion", "androidVersion", "platform_version")
    )

class HeartbeatIn(BaseModel):
    status: Literal["active", "inactive"] = "active"
    battery_level: int | None = Field(default=None, ge=0, le=100, validation_alias=AliasChoices("batteryLevel", "battery_level"))
    network_type: str | None = Field(default=None, validation_alias=AliasChoices("networkType", "network_type"))

class CommandResponseIn(BaseModel):
    command_id: int = Field(validation_alias=AliasChoices("commandId", "command_id"))
    status: str
    response: Any = None
    error: str | None = None

class BatchCommandIn(BaseModel):
    device_ids: list[str] = Field(min_length=1, validation_alias=AliasChoices("deviceIds", "devices"))
    command_type: str = Field(validation_alias=AliasChoices("type", "commandType"))
    payload: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("payload", "commandData"))

class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)
    accuracy: float | None = Field(default=None, allow_inf_nan=False)
    altitude: float | None = Field(default=None, allow_inf_nan=False)
    bearing: float | None = Field(default=None, allow_inf_nan=False)
    speed: float | None = Field(default=None, allow_inf_nan=False)
    address: str | None = None
    source: str = "gps"
    battery_level: int | None = Field(default=None, ge=0, le=100, validation_alias=AliasChoices("battery_level", "batteryLevel"))
    network_type: str | None = Field(default=None, validation_alias=AliasChoices("network_type", "networkType"))
    timestamp: datetime | None = None

class BatchLocationIn(BaseModel):
    device_id: str = Field(min_length=1, validation_alias=AliasChoices("deviceId", "device_id"))
    locations: list[dict[str, Any]]

class HistoryFilters(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    source: str = "all"
    max_accuracy: float | None = None
    limit: int = Field(default=100, ge=1, le=1000)

class GeofenceIn(BaseModel):
    name: str = Field(min_length=1)
    center_latitude: float = Field(ge=-90, le=90, validation_alias=AliasChoices("centerLatitude", "center_latitude"))
    center_longitude: float = Field(ge=-180, le=180, validation_alias=AliasChoices("centerLongitude", "center_longitude"))
    radius: float = Field(gt=0, validation_alias=AliasChoices("radius", "radiusMeters"))
    alert_type: Literal["enter", "exit", "both"] = Field(default="both", validation_alias=AliasChoices("alertType", "alert_type"))

class UserRegisterIn(BaseModel):
    username: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str

class LoginIn(BaseModel):
    username: str
    password: str

class ProfileUpdateIn(BaseModel):
    email: str | None = None
    current_password: str | None = Field(default=None, validation_alias=AliasChoices("currentPassword", "current_password"))
    new_password: str | None = Field(default=None, validation_alias=AliasChoices("newPassword", "new_password"))


# ---------------- response views ----------------

class _Out(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

class DeviceOut(_Out):
    device_id: str
    user_id: int
    name: str
    model: str
    platform_version: str
    is_locked: bool
    alarm_active: bool
    battery_level: int | None
    network_type: str | None
    status: str
    last_seen: datetime
    created_at: datetime
    is_online: bool = False

class CommandOut(_Out):
    id: int
    device_id: str
    user_id: int
    type: str
    command_data: dict[str, Any]
    status: str
    sent_at: datetime
    executed_at: datetime | None
    response: str | None

class LocationOut(_Out):
    id: int
    device_id: str
    latitude: float
    longitude: float
    accuracy: float | None
    altitude: float | None
    bearing: float | None
    speed: float | None
    address: str | None
    source: str
    battery_level: int | None
    network_type: str | None
    timestamp: datetime

class LogOut(_Out):
    id: int
    device_id: str
    log_type: str
    message: str
    timestamp: datetime

class GeofenceOut(_Out):
    id: int
    device_id: str
    name: str
    center_latitude: float
    center_longitude: float
    radius_meters: float
    alert_type: str
    is_active: bool
    created_at: datetime


def device_out(device: Device, now: datetime | None = None, window=PRESENCE_WINDOW) -> dict[str, Any]:
    view = DeviceOut.model_validate(device)
    view.is_online = is_online(device.last_seen, now, window)
    return view.model_dump(by_alias=True, mode="json")

def command_out(command: Command) -> dict[str, Any]:
    payload = decode_command_payload(command)
    return CommandOut(
        id=command.id,
        device_id=command.device_id,
        user_id=command.user_id,
        type=command.command_type,
        command_data=payload.model_dump(by_alias=True, exclude={"type"}),
        status=command.status,
        sent_at=command.sent_at,
        executed_at=command.executed_at,
        response=command.response,
    ).model_dump(by_alias=True, mode="json")

def location_out(location: Location) -> dict[str, Any]:
    return LocationOut.model_validate(location).model_dump(by_alias=True, mode="json")

def log_out(log: DeviceLog) -> dict[str, Any]:
    return LogOut.model_validate(log).model_dump(by_alias=True, mode="json")

def geofence_out(geofence: Geofence) -> dict[str, Any]:
    return GeofenceOut.model_validate(geofence).model_dump(by_alias=True, mode="json")
