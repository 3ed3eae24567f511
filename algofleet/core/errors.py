"""
Error taxonomy for the instance fleet.

RemoteError subclasses describe what went wrong talking to a gateway and
whether it is worth retrying. ValidationError / NotFoundError / ConflictError
are raised by the instance manager and surface to callers unchanged.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class RemoteErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FleetError(Exception):
    """Base class for all errors raised by algofleet."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
        }


class RemoteError(FleetError):
    """A gateway call failed."""

    kind: RemoteErrorKind = RemoteErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, status_code=status_code if status_code is not None else 502)
        self.operation = operation
        # HTTP status of the remote reply, None when no reply was received
        self.remote_status = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind is RemoteErrorKind.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        payload["operation"] = self.operation
        return payload


class TransientNetworkError(RemoteError):
    """Timeout, connection failure or 5xx. Retried by the gateway client."""

    kind = RemoteErrorKind.TRANSIENT


class PermanentRemoteError(RemoteError):
    """4xx or an explicit `status: error` envelope. Never retried."""

    kind = RemoteErrorKind.PERMANENT


class ValidationError(FleetError):
    status_code = 422

    def __init__(self, message: str = "Validation failed", errors: Optional[List[Dict[str, str]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


class NotFoundError(FleetError):
    status_code = 404

    def __init__(self, resource: str = "Resource", resource_id: Any = None) -> None:
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(FleetError):
    status_code = 409
