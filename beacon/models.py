from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

from .db import utcnow

# every timestamp column holds naive UTC

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    api_key: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

class AccessToken(SQLModel, table=True):
    token: str = Field(primary_key=True)
    user_id: int = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)

class Device(SQLModel, table=True):
    device_id: str = Field(primary_key=True, index=True)
    user_id: int = Field(index=True)
    name: str
    model: str = "Unknown"
    platform_version: str = "Unknown"
    is_locked: bool = False
    alarm_active: bool = False
    battery_level: Optional[int] = None
    network_type: Optional[str] = None
    status: str = Field(default="active")  # active|inactive
    last_seen: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

class Command(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    user_id: int
    command_type: str
    command_data: str = "{}"  # JSON text of the typed payload
    status: str = Field(default="pending", index=True)  # pending|completed|failed
    sent_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    executed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    response: Optional[str] = None

class Location(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None
    address: Optional[str] = None
    source: str = "gps"
    battery_level: Optional[int] = None
    network_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)

class DeviceLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    log_type: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)

class Geofence(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    user_id: int = Field(index=True)
    name: str
    center_latitude: float
    center_longitude: float
    radius_meters: float
    alert_type: str = "both"  # enter|exit|both
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
