from typing import Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class UserAccount(SQLModel, table=True):
    identity: str = Field(primary_key=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow)

class DeviceBinding(SQLModel, table=True):
    # device_id as primary key: a device has at most one owner
    device_id: str = Field(primary_key=True, index=True)
    owner: str = Field(index=True, foreign_key="useraccount.identity")
    type: str
    name: str
    settings: dict = Field(sa_column=Column(JSON))
    registered_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
