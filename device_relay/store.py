"""Ownership store: which identity owns which device, plus per-device name and settings.

Backed by SQLModel. Every public call is a coroutine that runs the blocking
session work in a worker thread; database failures come back as
``UpstreamStoreError`` and never escape as raw SQLAlchemy exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from .db import get_session, init_db
from .errors import ForbiddenError, NotFoundError, UpstreamStoreError
from .models import DeviceBinding, UserAccount
from .schemas import DeviceRecord, UserRecord

log = logging.getLogger("store")


def _record(b: DeviceBinding) -> DeviceRecord:
    return DeviceRecord(
        device_id=b.device_id,
        type=b.type,
        name=b.name,
        settings=dict(b.settings or {}),
        registered_at=b.registered_at,
    )


class OwnershipStore:
    def __init__(self, engine) -> None:
        self._engine = engine
        self.available = True
        self.initialized = False

    async def init(self) -> None:
        """Create the tables if needed."""
        await self._run(init_db, self._engine)
        self.initialized = True

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            result = await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            if self.available:
                log.error("[STORE] %s failed: %s", fn.__name__, e)
            self.available = False
            raise UpstreamStoreError("Ownership store unavailable") from e
        if not self.available:
            log.info("[STORE] reachable again")
        self.available = True
        return result

    # ---- health ----

    def _ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    async def ping(self) -> None:
        await self._run(self._ping)

    async def check(self) -> None:
        """Health step for the store monitor: ping, and drop pooled connections on failure."""
        try:
            if not self.initialized:
                await self.init()
            else:
                await self.ping()
        except UpstreamStoreError:
            await asyncio.to_thread(self._engine.dispose)
            raise

    # ---- reads ----

    def _get_user(self, identity: str) -> UserRecord | None:
        with get_session(self._engine) as s:
            user = s.get(UserAccount, identity)
            if user is None:
                return None
            rows = s.exec(
                select(DeviceBinding).where(DeviceBinding.owner == identity).order_by(DeviceBinding.registered_at)
            ).all()
            return UserRecord(identity=user.identity, created_at=user.created_at, devices=[_record(r) for r in rows])

    async def get_user(self, identity: str) -> UserRecord | None:
        return await self._run(self._get_user, identity)

    def _owner_of(self, device_id: str) -> str | None:
        with get_session(self._engine) as s:
            b = s.get(DeviceBinding, device_id)
            return b.owner if b else None

    async def owner_of(self, device_id: str) -> str | None:
        return await self._run(self._owner_of, device_id)

    async def owners_of(self, device_id: str) -> set[str]:
        owner = await self.owner_of(device_id)
        return {owner} if owner is not None else set()

    async def is_owner(self, identity: str, device_id: str) -> bool:
        return await self.owner_of(device_id) == identity

    def _get_device(self, device_id: str) -> DeviceRecord | None:
        with get_session(self._engine) as s:
            b = s.get(DeviceBinding, device_id)
            return _record(b) if b else None

    async def get_device(self, device_id: str) -> DeviceRecord | None:
        return await self._run(self._get_device, device_id)

    async def list_devices(self, identity: str) -> list[DeviceRecord]:
        user = await self.get_user(identity)
        return user.devices if user else []

    # ---- writes ----

    def _bind(self, identity: str, device_id: str, type_id: str, name: str, settings: dict, retry: bool = True) -> DeviceRecord:
        with get_session(self._engine) as s:
            existing = s.get(DeviceBinding, device_id)
            if existing is not None:
                if existing.owner != identity:
                    raise ForbiddenError("Device is already registered")
                return _record(existing)
            if s.get(UserAccount, identity) is None:
                s.add(UserAccount(identity=identity))
            b = DeviceBinding(device_id=device_id, owner=identity, type=type_id, name=name, settings=dict(settings))
            s.add(b)
            try:
                s.commit()
            except IntegrityError as e:
                s.rollback()
                winner = s.get(DeviceBinding, device_id)
                if winner is not None and winner.owner != identity:
                    raise ForbiddenError("Device is already registered") from e
                if winner is not None:
                    return _record(winner)
                if not retry:
                    raise
            else:
                s.refresh(b)
                return _record(b)
        # the account row raced with another registration by the same identity
        return self._bind(identity, device_id, type_id, name, settings, retry=False)

    async def bind(self, identity: str, device_id: str, type_id: str, name: str, settings: dict) -> DeviceRecord:
        return await self._run(self._bind, identity, device_id, type_id, name, settings)

    def _owned(self, s, identity: str, device_id: str) -> DeviceBinding:
        b = s.get(DeviceBinding, device_id)
        if b is None or b.owner != identity:
            raise NotFoundError("Device not registered")
        return b

    def _update_settings(self, identity: str, device_id: str, settings: dict) -> DeviceRecord:
        with get_session(self._engine) as s:
            b = self._owned(s, identity, device_id)
            # reassign so the JSON column is flagged dirty
            b.settings = dict(settings)
            b.updated_at = datetime.now(timezone.utc)
            s.add(b)
            s.commit()
            s.refresh(b)
            return _record(b)

    async def update_settings(self, identity: str, device_id: str, settings: dict) -> DeviceRecord:
        return await self._run(self._update_settings, identity, device_id, settings)

    def _rename(self, identity: str, device_id: str, name: str) -> DeviceRecord:
        with get_session(self._engine) as s:
            b = self._owned(s, identity, device_id)
            b.name = name
            b.updated_at = datetime.now(timezone.utc)
            s.add(b)
            s.commit()
            s.refresh(b)
            return _record(b)

    async def rename(self, identity: str, device_id: str, name: str) -> DeviceRecord:
        return await self._run(self._rename, identity, device_id, name)

    def _release(self, identity: str, device_id: str) -> bool:
        with get_session(self._engine) as s:
            b = s.get(DeviceBinding, device_id)
            if b is None or b.owner != identity:
                return False
            s.delete(b)
            s.commit()
            return True

    async def release(self, identity: str, device_id: str) -> bool:
        return await self._run(self._release, identity, device_id)
