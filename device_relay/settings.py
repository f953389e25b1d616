from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./device_relay.db")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_client_id: str = os.getenv("MQTT_CLIENT_ID", "device-relay")
    mqtt_keepalive: int = int(os.getenv("MQTT_KEEPALIVE", "30"))
    mqtt_reconnect_interval: float = float(os.getenv("MQTT_RECONNECT_INTERVAL", "5"))

    # JSON catalog of device types and devices; bundled default when unset
    device_registry_file: str | None = os.getenv("DEVICE_REGISTRY_FILE") or None

    ws_idle_timeout: float = float(os.getenv("WS_IDLE_TIMEOUT", "90"))
    ws_send_timeout: float = float(os.getenv("WS_SEND_TIMEOUT", "5"))
    store_check_interval: float = float(os.getenv("STORE_CHECK_INTERVAL", "15"))

settings = Settings()
