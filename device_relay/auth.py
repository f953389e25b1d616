"""Authorization for device-scoped operations.

Checks run in a fixed order and the first failure wins:

1. an identity is present            -> AuthError
2. the device id is registered       -> UnknownDeviceError
3. the identity owns the device      -> ForbiddenError

Ownership is read from the store on every call.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthError, ForbiddenError, UnknownDeviceError
from .registry import DeviceRegistry, DeviceTypeDefinition


@dataclass(frozen=True)
class DeviceContext:
    identity: str
    device_id: str
    device_type: DeviceTypeDefinition


def require_identity(identity: str | None) -> str:
    if identity is None or not str(identity).strip():
        raise AuthError("Missing identity")
    return str(identity).strip()


class AuthorizationGate:
    def __init__(self, registry: DeviceRegistry, store) -> None:
        self._registry = registry
        self._store = store

    def require_device(self, device_id: str | None) -> DeviceTypeDefinition:
        if not device_id or not self._registry.is_valid(device_id):
            raise UnknownDeviceError(f"Unknown device: {device_id}")
        return self._registry.type_of(device_id)

    async def authorize(self, identity: str | None, device_id: str | None) -> DeviceContext:
        identity = require_identity(identity)
        device_type = self.require_device(device_id)
        if not await self._store.is_owner(identity, device_id):
            raise ForbiddenError("Access to this device is not allowed")
        return DeviceContext(identity=identity, device_id=device_id, device_type=device_type)
