import asyncio
import logging

from fastapi import FastAPI, Header, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import AuthorizationGate
from .commands import UNKNOWN_COMMAND, CommandPublisher
from .db import make_engine
from .errors import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    TransportError,
    UnknownDeviceError,
    UpstreamStoreError,
    ValidationError,
)
from .ingest import TelemetryIngestor
from .mqtt_handler import MqttTransport
from .registry import DeviceRegistry
from .schemas import DeviceUpdate, RegisterDevice, Result, SettingsUpdate
from .service import DeviceService
from .settings import Settings, settings as default_settings
from .state import StateCache
from .store import OwnershipStore
from .supervisor import SupervisedTask
from .utils import add_cors
from .ws_manager import SubscriptionHub

log = logging.getLogger("api")

STATUS_BY_CODE = {
    cls.code: cls.status_code
    for cls in (ValidationError, AuthError, ForbiddenError, NotFoundError, UnknownDeviceError, TransportError, UpstreamStoreError)
}
STATUS_BY_CODE[UNKNOWN_COMMAND] = 400

def respond(result: Result) -> JSONResponse:
    status = 200 if result.ok else STATUS_BY_CODE.get(result.error, 500)
    return JSONResponse(result.model_dump(mode="json"), status_code=status)

def load_registry(settings: Settings) -> DeviceRegistry:
    if settings.device_registry_file:
        return DeviceRegistry.from_file(settings.device_registry_file)
    return DeviceRegistry.default()

class Relay:
    """Every component of one running relay, built once and wired explicitly."""

    def __init__(self, settings: Settings, *, registry=None, store=None, transport=None) -> None:
        self.settings = settings
        self.registry = registry if registry is not None else load_registry(settings)
        self.store = store if store is not None else OwnershipStore(make_engine(settings.database_url))
        self.cache = StateCache()
        self.hub = SubscriptionHub(self.store, idle_timeout=settings.ws_idle_timeout, send_timeout=settings.ws_send_timeout)
        self.ingestor = TelemetryIngestor(self.registry, self.cache, self.hub)
        self.transport = transport if transport is not None else MqttTransport(settings, topics=self.ingestor.topics())
        self.gate = AuthorizationGate(self.registry, self.store)
        self.publisher = CommandPublisher(self.registry, self.store, self.transport)
        self.service = DeviceService(self.registry, self.cache, self.store, self.gate, self.publisher, self.hub)
        self.store_monitor = SupervisedTask("store", self.store.check, settings.store_check_interval)
        self._forwarder: asyncio.Task | None = None

    async def start(self) -> None:
        try:
            await self.store.init()
        except UpstreamStoreError as e:
            log.error("[STORE] init failed, monitor will retry: %s", e)
        self.transport.start()
        self._forwarder = asyncio.create_task(self.queue_forwarder())
        self.store_monitor.start()

    async def stop(self) -> None:
        await self.store_monitor.stop()
        if self._forwarder is not None:
            self._forwarder.cancel()
            try:
                await self._forwarder
            except asyncio.CancelledError:
                pass
            self._forwarder = None
        await self.transport.stop()

    async def queue_forwarder(self) -> None:
        # one consumer keeps per-device arrival order
        while True:
            topic, payload = await self.transport.messages.get()
            try:
                await self.ingestor.handle_message(topic, payload)
            except Exception:
                log.exception("[INGEST] unhandled error for %s", topic)

    def health(self) -> dict:
        return {
            "mqtt": {"connected": self.transport.connected, **self.transport.stats},
            "store": {"available": self.store.available},
            "ingest": dict(self.ingestor.stats),
            "devices_cached": len(self.cache),
            "connections": self.hub.connection_count,
        }

def create_app(settings: Settings | None = None, *, registry=None, store=None, transport=None) -> FastAPI:
    settings = settings or default_settings
    relay = Relay(settings, registry=registry, store=store, transport=transport)
    service = relay.service

    app = FastAPI(title="Device Relay", version="0.1.0")
    app.state.relay = relay
    add_cors(app, settings.cors_origins)

    @app.on_event("startup")
    async def on_startup():
        await relay.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        await relay.stop()

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        detail = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        result = Result(ok=False, error=ValidationError.code, message="Invalid request", data=detail)
        return respond(result)

    @app.get("/api/device-types")
    async def list_device_types():
        return respond(await service.list_types())

    @app.post("/api/devices")
    async def register_device(body: RegisterDevice, x_user_id: str | None = Header(default=None)):
        return respond(await service.register(x_user_id, body.device_id, body.name))

    @app.get("/api/devices")
    async def list_devices(x_user_id: str | None = Header(default=None)):
        return respond(await service.list_devices(x_user_id))

    @app.get("/api/devices/{device_id}/latest")
    async def get_latest(device_id: str, x_user_id: str | None = Header(default=None)):
        return respond(await service.latest(x_user_id, device_id))

    @app.put("/api/devices/{device_id}/settings")
    async def update_settings(device_id: str, body: SettingsUpdate, x_user_id: str | None = Header(default=None)):
        return respond(await service.update_settings(x_user_id, device_id, body.settings))

    @app.post("/api/devices/{device_id}/resync")
    async def resync_device(device_id: str, x_user_id: str | None = Header(default=None)):
        return respond(await service.resync(x_user_id, device_id))

    @app.put("/api/devices/{device_id}")
    async def rename_device(device_id: str, body: DeviceUpdate, x_user_id: str | None = Header(default=None)):
        return respond(await service.rename(x_user_id, device_id, body.name))

    @app.delete("/api/devices/{device_id}")
    async def release_device(device_id: str, x_user_id: str | None = Header(default=None)):
        return respond(await service.release(x_user_id, device_id))

    @app.get("/api/health")
    async def health():
        return respond(Result(ok=True, data=relay.health()))

    @app.websocket("/ws")
    async def device_ws(websocket: WebSocket):
        await relay.hub.serve(websocket)

    return app
