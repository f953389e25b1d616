from __future__ import annotations

import pytest

from device_relay.auth import AuthorizationGate, require_identity
from device_relay.errors import AuthError, ForbiddenError, NotFoundError, UnknownDeviceError


@pytest.fixture
def gate(registry, store) -> AuthorizationGate:
    return AuthorizationGate(registry, store)


def test_require_identity() -> None:
    assert require_identity(" 42 ") == "42"
    for missing in (None, "", "   "):
        with pytest.raises(AuthError):
            require_identity(missing)


@pytest.mark.asyncio
async def test_identity_is_checked_before_device(gate: AuthorizationGate) -> None:
    with pytest.raises(AuthError):
        await gate.authorize(None, "ghost01")


@pytest.mark.asyncio
async def test_unknown_device(gate: AuthorizationGate) -> None:
    with pytest.raises(UnknownDeviceError) as exc:
        await gate.authorize("42", "ghost01")
    assert isinstance(exc.value, NotFoundError)
    with pytest.raises(UnknownDeviceError):
        await gate.authorize("42", None)


@pytest.mark.asyncio
async def test_owner_is_authorized_and_others_forbidden(gate: AuthorizationGate, store) -> None:
    await store.bind("42", "climate01", "climate", "Living room", {"threshold": 25})

    ctx = await gate.authorize("42", "climate01")
    assert ctx.identity == "42"
    assert ctx.device_id == "climate01"
    assert ctx.device_type.type_id == "climate"

    with pytest.raises(ForbiddenError) as exc:
        await gate.authorize("99", "climate01")
    assert "42" not in exc.value.message


@pytest.mark.asyncio
async def test_unowned_device_is_forbidden(gate: AuthorizationGate) -> None:
    with pytest.raises(ForbiddenError):
        await gate.authorize("42", "climate02")


@pytest.mark.asyncio
async def test_ownership_is_read_fresh_each_call(gate: AuthorizationGate, store) -> None:
    await store.bind("42", "climate01", "climate", "Living room", {"threshold": 25})
    await gate.authorize("42", "climate01")

    await store.release("42", "climate01")
    with pytest.raises(ForbiddenError):
        await gate.authorize("42", "climate01")
