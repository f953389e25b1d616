"""Static device catalog: device types, topic templates and validation rules.

The registry is built once at startup and never mutated afterwards. Every
component that needs it receives the same instance.
"""

from __future__ import annotations

import json
import logging
import math
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .errors import RegistryError, ValidationError

log = logging.getLogger("registry")

DEVICE_ID_PLACEHOLDER = "{device_id}"
TELEMETRY_KIND = "data"

DEFAULT_CATALOG: dict[str, Any] = {
    "types": [
        {
            "type_id": "climate",
            "name": "Climate sensor",
            "description": "Temperature and humidity sensor with an alarm threshold",
            "topics": {
                "data": "devices/{device_id}/data",
                "threshold": "devices/{device_id}/threshold",
            },
            "telemetry": ["data"],
            "default_settings": {"threshold": 25},
            "rules": {"threshold": {"kind": "number", "min": 0, "max": 40}},
        },
        {
            "type_id": "switch",
            "name": "Smart switch",
            "description": "Relay switch reporting power usage",
            "topics": {
                "data": "devices/{device_id}/data",
                "power": "devices/{device_id}/power",
            },
            "telemetry": ["data"],
            "default_settings": {"power": False},
            "rules": {"power": {"kind": "boolean"}},
        },
    ],
    "devices": {
        "climate01": "climate",
        "climate02": "climate",
        "switch01": "switch",
    },
}


class FieldRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number", "integer", "boolean", "string"] = "number"
    min: float | None = None
    max: float | None = None

    def check(self, field: str, value: Any) -> None:
        """Raise ValidationError unless ``value`` satisfies this rule."""
        if self.kind == "boolean":
            if not isinstance(value, bool):
                raise ValidationError(f"{field} must be a boolean", detail={"field": field})
            return
        if self.kind == "string":
            if not isinstance(value, str):
                raise ValidationError(f"{field} must be a string", detail={"field": field})
            return

        # bool is an int subclass; never accept it as a number
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{field} must be a {self.kind}", detail={"field": field})
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"{field} must be finite", detail={"field": field})
        if self.kind == "integer" and isinstance(value, float) and not value.is_integer():
            raise ValidationError(f"{field} must be an integer", detail={"field": field})
        if (self.min is not None and value < self.min) or (self.max is not None and value > self.max):
            bounds = [f">= {self.min:g}" if self.min is not None else "", f"<= {self.max:g}" if self.max is not None else ""]
            raise ValidationError(
                f"{field} must be " + " and ".join(b for b in bounds if b),
                detail={"field": field, "min": self.min, "max": self.max, "value": value},
            )


class DeviceTypeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type_id: str
    name: str
    description: str = ""
    topics: dict[str, str]
    telemetry: tuple[str, ...] = (TELEMETRY_KIND,)
    default_settings: dict[str, Any] = Field(default_factory=dict)
    rules: dict[str, FieldRule] = Field(default_factory=dict)

    @property
    def commands(self) -> tuple[str, ...]:
        return tuple(self.rules)


class RegistryConfig(BaseModel):
    types: list[DeviceTypeDefinition]
    devices: dict[str, str]


class DeviceRegistry:
    def __init__(self, types: Iterable[DeviceTypeDefinition], devices: Mapping[str, str]) -> None:
        self._types = MappingProxyType({t.type_id: t for t in types})
        self._devices = MappingProxyType(dict(devices))
        self._check()
        self._patterns = self._compile_patterns()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeviceRegistry":
        cfg = RegistryConfig.model_validate(data)
        return cls(cfg.types, cfg.devices)

    @classmethod
    def from_file(cls, path: str | Path) -> "DeviceRegistry":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        registry = cls.from_dict(raw)
        log.info("[REGISTRY] loaded %d types, %d devices from %s", len(registry._types), len(registry._devices), path)
        return registry

    @classmethod
    def default(cls) -> "DeviceRegistry":
        return cls.from_dict(DEFAULT_CATALOG)

    def _check(self) -> None:
        for type_id, dtype in self._types.items():
            for kind in (*dtype.telemetry, *dtype.commands):
                template = dtype.topics.get(kind)
                if template is None:
                    raise RegistryError(f"type {type_id!r} has no topic for {kind!r}")
                if DEVICE_ID_PLACEHOLDER not in template:
                    raise RegistryError(f"topic {template!r} of type {type_id!r} lacks {DEVICE_ID_PLACEHOLDER}")
            for field, value in dtype.default_settings.items():
                rule = dtype.rules.get(field)
                if rule is None:
                    raise RegistryError(f"default setting {field!r} of type {type_id!r} has no rule")
                try:
                    rule.check(field, value)
                except ValidationError as e:
                    raise RegistryError(f"default of type {type_id!r} is invalid: {e.message}") from e
        for device_id, type_id in self._devices.items():
            if type_id not in self._types:
                raise RegistryError(f"device {device_id!r} refers to unknown type {type_id!r}")

    def _compile_patterns(self) -> list[tuple[str, re.Pattern[str]]]:
        seen: dict[tuple[str, str], re.Pattern[str]] = {}
        for dtype in self._types.values():
            for kind, template in dtype.topics.items():
                if (kind, template) in seen:
                    continue
                parts = [re.escape(p) for p in template.split(DEVICE_ID_PLACEHOLDER)]
                seen[(kind, template)] = re.compile("(?P<device_id>[^/#+]+)".join(parts))
        return [(kind, pattern) for (kind, _), pattern in seen.items()]

    # ---- lookups ----

    def is_valid(self, device_id: str | None) -> bool:
        return bool(device_id) and device_id in self._devices

    def type_of(self, device_id: str) -> DeviceTypeDefinition:
        type_id = self._devices.get(device_id)
        if type_id is None:
            raise RegistryError(f"unknown device {device_id!r}")
        return self._types[type_id]

    def get_type(self, type_id: str) -> DeviceTypeDefinition | None:
        return self._types.get(type_id)

    def types(self) -> list[DeviceTypeDefinition]:
        return list(self._types.values())

    def device_ids(self) -> list[str]:
        return list(self._devices)

    def rules_for(self, type_id: str) -> Mapping[str, FieldRule]:
        return MappingProxyType(self._types[type_id].rules)

    def defaults_for(self, type_id: str) -> dict[str, Any]:
        return dict(self._types[type_id].default_settings)

    # ---- topics ----

    def topic_for(self, device_id: str, kind: str) -> str | None:
        """Concrete topic for a device and command/telemetry kind, or None if the type has none."""
        template = self.type_of(device_id).topics.get(kind)
        if template is None:
            return None
        return template.replace(DEVICE_ID_PLACEHOLDER, device_id)

    def telemetry_topics(self) -> list[str]:
        topics = []
        for device_id in self._devices:
            for kind in self.type_of(device_id).telemetry:
                topics.append(self.topic_for(device_id, kind))
        return topics

    def parse_topic(self, topic: str) -> tuple[str, str] | None:
        """Map a concrete topic back to ``(device_id, kind)``; None for anything unregistered."""
        for kind, pattern in self._patterns:
            m = pattern.fullmatch(topic)
            if not m:
                continue
            device_id = m.group("device_id")
            if self.is_valid(device_id) and self.topic_for(device_id, kind) == topic:
                return device_id, kind
        return None
