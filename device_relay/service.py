"""Transport-agnostic request surface.

Each operation returns a ``Result``; relay errors are converted to a failed
result carrying the error classification, never raised to the caller.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable

from .auth import AuthorizationGate, require_identity
from .commands import CommandPublisher
from .errors import RelayError, ValidationError
from .registry import DeviceRegistry
from .schemas import DeviceOut, DeviceRecord, DeviceTypeOut, Result
from .state import StateCache
from .ws_manager import SubscriptionHub

log = logging.getLogger("service")


def structured(fn: Callable[..., Awaitable[Result]]) -> Callable[..., Awaitable[Result]]:
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Result:
        try:
            return await fn(*args, **kwargs)
        except RelayError as e:
            if e.status_code >= 500:
                log.error("[API] %s failed: %s", fn.__name__, e.message)
            return Result(ok=False, error=e.code, message=e.message, data=e.detail or None)

    return wrapper


class DeviceService:
    def __init__(
        self,
        registry: DeviceRegistry,
        cache: StateCache,
        store,
        gate: AuthorizationGate,
        publisher: CommandPublisher,
        hub: SubscriptionHub,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.store = store
        self.gate = gate
        self.publisher = publisher
        self.hub = hub

    def _device_out(self, rec: DeviceRecord) -> DeviceOut:
        snap = self.cache.get(rec.device_id)
        return DeviceOut(**rec.model_dump(), last_seen=snap.iso_timestamp if snap else None)

    @structured
    async def list_types(self) -> Result:
        types = [
            DeviceTypeOut(
                type_id=t.type_id,
                name=t.name,
                description=t.description,
                commands=list(t.commands),
                telemetry=list(t.telemetry),
                default_settings=dict(t.default_settings),
                rules={k: r.model_dump(exclude_none=True) for k, r in t.rules.items()},
            )
            for t in self.registry.types()
        ]
        return Result(ok=True, data=types)

    @structured
    async def register(self, identity: str | None, device_id: str | None, name: str | None = None) -> Result:
        identity = require_identity(identity)
        dtype = self.gate.require_device(device_id)
        name = (name or "").strip() or f"{dtype.name} {device_id}"
        rec = await self.store.bind(identity, device_id, dtype.type_id, name, self.registry.defaults_for(dtype.type_id))
        await self.hub.notify_user(identity, f"Device {device_id} registered")
        return Result(ok=True, data=self._device_out(rec))

    @structured
    async def list_devices(self, identity: str | None) -> Result:
        identity = require_identity(identity)
        records = await self.store.list_devices(identity)
        return Result(ok=True, data=[self._device_out(r) for r in records])

    @structured
    async def latest(self, identity: str | None, device_id: str | None) -> Result:
        ctx = await self.gate.authorize(identity, device_id)
        return Result(ok=True, data=self.cache.latest(ctx.device_id))

    @structured
    async def update_settings(self, identity: str | None, device_id: str | None, settings: dict[str, Any]) -> Result:
        ctx = await self.gate.authorize(identity, device_id)
        if not isinstance(settings, dict):
            raise ValidationError("settings must be an object")
        res = await self.publisher.apply(ctx, settings)
        data = {"device_id": res.device_id, "settings": res.settings, "published": res.published}
        if res.ok:
            await self.hub.notify_user(ctx.identity, f"Settings updated for {ctx.device_id}")
            return Result(ok=True, data=data)
        return Result(ok=False, data=data if res.settings else None, error=res.error, message=res.message)

    @structured
    async def resync(self, identity: str | None, device_id: str | None) -> Result:
        ctx = await self.gate.authorize(identity, device_id)
        res = await self.publisher.resync(ctx)
        data = {"device_id": res.device_id, "settings": res.settings, "published": res.published}
        return Result(ok=res.ok, data=data, error=res.error, message=res.message)

    @structured
    async def rename(self, identity: str | None, device_id: str | None, name: str) -> Result:
        ctx = await self.gate.authorize(identity, device_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name must not be empty", detail={"field": "name"})
        rec = await self.store.rename(ctx.identity, ctx.device_id, name)
        await self.hub.notify_user(ctx.identity, f"Device {ctx.device_id} renamed to {name}")
        return Result(ok=True, data=self._device_out(rec))

    @structured
    async def release(self, identity: str | None, device_id: str | None) -> Result:
        ctx = await self.gate.authorize(identity, device_id)
        await self.store.release(ctx.identity, ctx.device_id)
        self.publisher.forget(ctx.device_id)
        await self.hub.notify_user(ctx.identity, f"Device {ctx.device_id} released")
        return Result(ok=True, data={"device_id": ctx.device_id})
