"""Real-time relay between MQTT devices and WebSocket users."""

__version__ = "0.1.0"
