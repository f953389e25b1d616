import asyncio
import json
import logging
import time
import uuid
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .errors import AuthError, UpstreamStoreError
from .state import TelemetrySnapshot

log = logging.getLogger("ws")

class Connection:
    """One push channel. Bound to an identity after the ``auth`` handshake."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.id = uuid.uuid4().hex[:8]
        self.identity: str | None = None
        self.connected_at = time.time()

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    async def send(self, message: dict[str, Any]) -> None:
        await self.websocket.send_json(message)

    def __repr__(self) -> str:
        return f"<Connection {self.id} identity={self.identity!r}>"

class SubscriptionHub:
    def __init__(self, store, idle_timeout: float = 90.0, send_timeout: float = 5.0) -> None:
        self._store = store
        self.idle_timeout = idle_timeout
        # a client that stops reading is dropped instead of holding up fan-out
        self.send_timeout = send_timeout
        self._pending: set[Connection] = set()
        self._by_user: dict[str, set[Connection]] = {}
        self._lock = asyncio.Lock()

    # ---- membership ----

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        conn = Connection(websocket)
        await self.add(conn)
        return conn

    async def add(self, conn: Connection) -> None:
        async with self._lock:
            self._pending.add(conn)

    async def authenticate(self, conn: Connection, identity: str) -> None:
        if not identity:
            raise AuthError("Missing identity")
        async with self._lock:
            self._pending.discard(conn)
            if conn.identity is not None and conn.identity != identity:
                self._discard(conn.identity, conn)
            conn.identity = identity
            self._by_user.setdefault(identity, set()).add(conn)
        log.info("[WS] %s authenticated as %s", conn.id, identity)

    async def remove(self, conn: Connection) -> None:
        """Forget a connection. Safe to call repeatedly and for unknown connections."""
        async with self._lock:
            self._pending.discard(conn)
            if conn.identity is not None:
                self._discard(conn.identity, conn)

    def _discard(self, identity: str, conn: Connection) -> None:
        conns = self._by_user.get(identity)
        if conns is None:
            return
        conns.discard(conn)
        if not conns:
            del self._by_user[identity]

    def connections_for(self, identity: str) -> list[Connection]:
        return list(self._by_user.get(identity, ()))

    @property
    def connection_count(self) -> int:
        return len(self._pending) + sum(len(c) for c in self._by_user.values())

    # ---- fan-out ----

    async def notify(self, device_id: str, snapshot: TelemetrySnapshot) -> int:
        """Push a device update to every live connection of every owner. Returns deliveries made."""
        try:
            owners = await self._store.owners_of(device_id)
        except UpstreamStoreError as e:
            log.warning("[WS] cannot resolve owners of %s: %s", device_id, e)
            return 0
        message = {
            "type": "device_update",
            "device_id": device_id,
            "data": snapshot.as_dict(),
            "timestamp": snapshot.iso_timestamp,
        }
        async with self._lock:
            targets = [c for owner in owners for c in self._by_user.get(owner, ())]
        return await self._deliver(targets, message)

    async def send_to_user(self, identity: str, message: dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self._by_user.get(identity, ()))
        return await self._deliver(targets, message)

    async def notify_user(self, identity: str, text: str) -> int:
        return await self.send_to_user(identity, {"type": "notification", "message": text})

    async def _deliver(self, targets: list[Connection], message: dict[str, Any]) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(*(self._safe_send(c, message) for c in targets))
        return sum(results)

    async def _safe_send(self, conn: Connection, message: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(conn.send(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            log.warning("[WS] %s not reading for %.1fs, dropping", conn.id, self.send_timeout)
            await self.remove(conn)
            return False
        except Exception as e:
            log.debug("[WS] send to %s failed: %s", conn.id, e)
            await self.remove(conn)
            return False

    # ---- session ----

    async def serve(self, websocket: WebSocket) -> None:
        """Run one WebSocket session until the client leaves, errors or idles out."""
        conn = await self.connect(websocket)
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(websocket.receive_text(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    log.info("[WS] %s idle for %.0fs, closing", conn.id, self.idle_timeout)
                    await websocket.close(code=1000)
                    break
                await self._handle(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning("[WS] %s session error: %s", conn.id, e)
        finally:
            await self.remove(conn)

    async def _handle(self, conn: Connection, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            await conn.send({"type": "error", "message": "Invalid JSON"})
            return
        if not isinstance(msg, dict):
            await conn.send({"type": "error", "message": "Message must be an object"})
            return

        mtype = msg.get("type")
        if mtype == "ping":
            await conn.send({"type": "pong"})
        elif mtype == "auth":
            identity = msg.get("identity")
            if isinstance(identity, bool) or not isinstance(identity, (str, int)) or not str(identity).strip():
                await conn.send({"type": "error", "message": "Missing identity"})
                return
            identity = str(identity).strip()
            await self.authenticate(conn, identity)
            await conn.send({"type": "auth_success", "identity": identity})
        elif not conn.authenticated:
            await conn.send({"type": "error", "message": "Not authenticated"})
        else:
            await conn.send({"type": "error", "message": f"Unsupported message type: {mtype}"})
