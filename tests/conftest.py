"""Shared fixtures: default catalog, in-memory store, fake MQTT transport and sockets."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from device_relay.db import init_db, make_engine
from device_relay.registry import DeviceRegistry
from device_relay.settings import Settings
from device_relay.store import OwnershipStore


class FakeTransport:
    """Stands in for MqttTransport; records publishes instead of sending them."""

    def __init__(self) -> None:
        self.messages: asyncio.Queue = asyncio.Queue()
        self.publish = AsyncMock()
        self.connected = True
        self.started = False
        self.stats = {"rx_total": 0, "tx_total": 0}

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry.default()


@pytest.fixture
def store() -> OwnershipStore:
    engine = make_engine("sqlite://")
    init_db(engine)
    s = OwnershipStore(engine)
    s.initialized = True
    return s


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", ws_idle_timeout=5.0, store_check_interval=60.0)
