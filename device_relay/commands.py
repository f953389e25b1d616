"""Validated settings changes relayed to devices.

Persisting the new settings and publishing them are two separate effects and
are not transactional. When a publish fails after the store write, the field
is remembered as unsynced and is published again by the next change touching
it or by ``resync``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .auth import DeviceContext
from .errors import NotFoundError, TransportError, ValidationError
from .registry import DeviceRegistry

log = logging.getLogger("commands")

UNKNOWN_COMMAND = "unknown_command"


@dataclass
class CommandResult:
    ok: bool
    device_id: str
    settings: dict[str, Any] = field(default_factory=dict)
    published: list[str] = field(default_factory=list)
    error: str | None = None
    message: str | None = None


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CommandPublisher:
    def __init__(self, registry: DeviceRegistry, store, transport) -> None:
        self._registry = registry
        self._store = store
        self._transport = transport
        self._unsynced: dict[str, set[str]] = {}

    def unsynced(self, device_id: str) -> set[str]:
        return set(self._unsynced.get(device_id, ()))

    def forget(self, device_id: str) -> None:
        """Drop pending fields of a device whose binding went away."""
        self._unsynced.pop(device_id, None)

    async def send(self, ctx: DeviceContext, command: str, value: Any) -> CommandResult:
        return await self.apply(ctx, {command: value})

    async def apply(self, ctx: DeviceContext, changes: Mapping[str, Any]) -> CommandResult:
        """Validate ``changes``, store them, then publish each changed field to its topic."""
        device_id = ctx.device_id
        rules = ctx.device_type.rules
        if not changes:
            raise ValidationError("No settings given")

        for command in changes:
            if command not in rules or self._registry.topic_for(device_id, command) is None:
                return CommandResult(
                    ok=False,
                    device_id=device_id,
                    error=UNKNOWN_COMMAND,
                    message=f"Unknown command {command!r} for {ctx.device_type.type_id}",
                )
        # every field is checked before anything is stored or sent
        for command, value in changes.items():
            rules[command].check(command, value)

        record = await self._store.get_device(device_id)
        if record is None:
            raise NotFoundError("Device not registered")
        current = {**self._registry.defaults_for(ctx.device_type.type_id), **record.settings}
        pending = self._unsynced.get(device_id, set())
        changed = {k: v for k, v in changes.items() if k not in record.settings or current.get(k) != v or k in pending}

        record = await self._store.update_settings(ctx.identity, device_id, {**current, **changes})
        return await self._publish(device_id, changed, record.settings)

    async def resync(self, ctx: DeviceContext) -> CommandResult:
        """Publish every stored setting of the device again."""
        record = await self._store.get_device(ctx.device_id)
        if record is None:
            raise NotFoundError("Device not registered")
        return await self._publish(ctx.device_id, dict(record.settings), record.settings)

    async def _publish(self, device_id: str, fields: Mapping[str, Any], settings: dict[str, Any]) -> CommandResult:
        published: list[str] = []
        failed: list[str] = []
        for command, value in fields.items():
            topic = self._registry.topic_for(device_id, command)
            try:
                await self._transport.publish(topic, format_value(value))
            except TransportError as e:
                log.error("[CMD] publish %s=%r to %s failed, stored value not delivered: %s", command, value, topic, e)
                self._unsynced.setdefault(device_id, set()).add(command)
                failed.append(command)
                continue
            log.info("[CMD] %s -> %s", topic, format_value(value))
            published.append(command)
            pending = self._unsynced.get(device_id)
            if pending is not None:
                pending.discard(command)
                if not pending:
                    del self._unsynced[device_id]

        if failed:
            return CommandResult(
                ok=False,
                device_id=device_id,
                settings=settings,
                published=published,
                error=TransportError.code,
                message=f"Settings saved but not delivered to the device: {', '.join(failed)}",
            )
        return CommandResult(ok=True, device_id=device_id, settings=settings, published=published)
