from __future__ import annotations

from typing import Any, Dict


class FleetError(Exception):
    """Base error carrying the HTTP status and JSON body a handler responds with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message}
        payload.update(self.extra)
        return payload


class ConfigError(FleetError):
    status_code = 500


class BadRequestError(FleetError):
    status_code = 400


class InstanceNotFound(FleetError):
    status_code = 404

    def __init__(self, instance_name: str, zone: str, **extra: Any):
        super().__init__(f"Instance {instance_name} not found in zone {zone}.", **extra)
        self.instance_name = instance_name
        self.zone = zone


class ProviderError(FleetError):
    """Compute Engine call failed for a reason other than a missing instance."""

    status_code = 500


class InferenceError(FleetError):
    """Relayed Ollama call failed; status is the upstream status, 502 or 500."""

    status_code = 502
