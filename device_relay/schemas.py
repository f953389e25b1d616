from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any

class DeviceRecord(BaseModel):
    device_id: str
    type: str
    name: str
    settings: dict[str, Any] = {}
    registered_at: datetime

class UserRecord(BaseModel):
    identity: str
    created_at: datetime
    devices: list[DeviceRecord] = []

class DeviceTypeOut(BaseModel):
    type_id: str
    name: str
    description: str
    commands: list[str]
    telemetry: list[str]
    default_settings: dict[str, Any]
    rules: dict[str, dict[str, Any]]

class DeviceOut(DeviceRecord):
    last_seen: str | None = None

class RegisterDevice(BaseModel):
    device_id: str = Field(min_length=1)
    name: str | None = None

class DeviceUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=100)

class SettingsUpdate(BaseModel):
    settings: dict[str, Any]

class Result(BaseModel):
    ok: bool
    data: Any = None
    error: str | None = None
    message: str | None = None
