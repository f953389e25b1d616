"""Error taxonomy for the relay.

Every error carries a machine-readable ``code`` (returned to callers as the
``error`` field of a result) and the HTTP status the request surface maps it to.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", *, detail: dict | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.detail = detail or {}
        super().__init__(self.message)


class RegistryError(RelayError):
    """Device catalog is inconsistent."""

    code = "registry_error"


class ValidationError(RelayError):
    """Missing, malformed or out-of-range field."""

    code = "validation_error"
    status_code = 400


class AuthError(RelayError):
    """Missing or invalid identity."""

    code = "unauthenticated"
    status_code = 401


class ForbiddenError(RelayError):
    """Identity is valid but does not own the device.

    The message never names the actual owner.
    """

    code = "forbidden"
    status_code = 403


class NotFoundError(RelayError):
    """Unknown device or user."""

    code = "not_found"
    status_code = 404


class UnknownDeviceError(NotFoundError):
    """Device id is not present in the registry."""

    code = "unknown_device"


class TransportError(RelayError):
    """MQTT decode or publish failure."""

    code = "transport_error"
    status_code = 502


class UpstreamStoreError(RelayError):
    """Ownership store is unreachable or failed."""

    code = "store_unavailable"
    status_code = 503
