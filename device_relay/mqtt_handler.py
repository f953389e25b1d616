# device_relay/mqtt_handler.py
import asyncio
import logging
import time
from typing import Iterable

import paho.mqtt.client as mqtt

from .errors import TransportError
from .settings import Settings
from .supervisor import SupervisedTask

log = logging.getLogger("mqtt")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def _rc_str(rc) -> str:
    # Nice printable form for logs
    name = getattr(rc, "getName", None)
    if callable(name):
        return f"{getattr(rc, 'value', rc)}:{name()}"
    return str(getattr(rc, "value", rc))

class MqttTransport:
    """paho-mqtt client driven from asyncio.

    A supervised task connects and runs the network loop in worker threads.
    When the connection drops it waits a fixed interval and connects again,
    forever, until ``stop()``. Every (re)connect subscribes to all telemetry
    topics. Inbound messages land on ``messages`` in arrival order.
    """

    def __init__(self, settings: Settings, topics: Iterable[str] = (), publish_timeout: float = 5.0) -> None:
        self._settings = settings
        self._topics = list(topics)
        self._publish_timeout = publish_timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = False
        self.messages: asyncio.Queue = asyncio.Queue()
        self.stats = {"connects": 0, "disconnects": 0, "rx_total": 0, "tx_total": 0, "tx_failed": 0}
        self._client = self._build_client()
        self._supervisor = SupervisedTask("mqtt", self._session, settings.mqtt_reconnect_interval)

    @property
    def connected(self) -> bool:
        return self._connected

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            client_id=f"{self._settings.mqtt_client_id}-{int(time.time())}",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
        )
        client.enable_logger(log)  # paho internal logs

        if self._settings.mqtt_username and self._settings.mqtt_password:
            client.username_pw_set(self._settings.mqtt_username, self._settings.mqtt_password)

        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    # ---- paho callbacks (network thread) ----

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("[MQTT] Connect refused rc=%s", _rc_str(reason_code))
            return
        self._connected = True
        self.stats["connects"] += 1
        if self._topics:
            res, mid = client.subscribe([(t, 0) for t in self._topics])
            log.info("[MQTT] Connected. SUB %d topics res=%s mid=%s", len(self._topics), res, mid)
        else:
            log.info("[MQTT] Connected, no topics to subscribe")

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties):
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("[MQTT] subscription mid=%s rejected by broker ACL", mid)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected = False
        self.stats["disconnects"] += 1
        log.warning("[MQTT] Disconnected rc=%s", _rc_str(reason_code))

    def _on_message(self, client, userdata, msg):
        self.stats["rx_total"] += 1
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.messages.put_nowait, (msg.topic, msg.payload))

    # ---- lifecycle ----

    def set_topics(self, topics: Iterable[str]) -> None:
        new = [t for t in topics if t not in self._topics]
        self._topics.extend(new)
        if new and self._connected:
            self._client.subscribe([(t, 0) for t in new])

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        log.info(
            "[MQTT] Bootstrapping host=%s port=%s user=%s",
            self._settings.mqtt_host,
            self._settings.mqtt_port,
            "<set>" if self._settings.mqtt_username else "<none>",
        )
        self._supervisor.start()

    async def stop(self) -> None:
        await self._supervisor.stop()
        if self._connected:
            self._client.disconnect()
        self._connected = False

    async def _session(self) -> None:
        """One connection lifetime: connect, then pump the network loop until it fails."""
        try:
            await asyncio.to_thread(
                self._client.connect,
                self._settings.mqtt_host,
                self._settings.mqtt_port,
                self._settings.mqtt_keepalive,
            )
        except OSError as e:
            raise TransportError(f"connect to {self._settings.mqtt_host}:{self._settings.mqtt_port} failed: {e}") from e
        try:
            while True:
                rc = await asyncio.to_thread(self._client.loop, 1.0)
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    raise TransportError(f"network loop ended rc={rc}")
        finally:
            self._connected = False

    # ---- outbound ----

    async def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> None:
        if not self._connected:
            self.stats["tx_failed"] += 1
            raise TransportError("MQTT not connected")
        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.stats["tx_failed"] += 1
            raise TransportError(f"publish rc={info.rc}")
        try:
            await asyncio.to_thread(info.wait_for_publish, self._publish_timeout)
        except (RuntimeError, ValueError) as e:
            self.stats["tx_failed"] += 1
            raise TransportError(f"publish to {topic} failed: {e}") from e
        if not info.is_published():
            self.stats["tx_failed"] += 1
            raise TransportError(f"publish to {topic} not confirmed")
        self.stats["tx_total"] += 1
