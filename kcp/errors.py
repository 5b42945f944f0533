"""Error taxonomy shared by every control plane component."""

from __future__ import annotations

from typing import Optional


class ControlPlaneError(Exception):
    """Base error. ``status`` follows the Kubernetes API status codes."""

    status: int = 500
    reason: str = "InternalError"

    def __init__(self, message: str = "", key: Optional[str] = None) -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason
        self.key = key

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.message, "key": self.key, "status": self.status}


class NotFound(ControlPlaneError):
    status = 404
    reason = "NotFound"


class Conflict(ControlPlaneError):
    """Optimistic write lost: the presented version is not the current one."""

    status = 409
    reason = "Conflict"

    def __init__(
        self,
        message: str = "",
        key: Optional[str] = None,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
    ) -> None:
        super().__init__(message, key=key)
        self.expected = expected
        self.actual = actual


class AlreadyExists(Conflict):
    reason = "AlreadyExists"


class InvalidResource(ControlPlaneError):
    status = 422
    reason = "Invalid"


class InvalidTransition(ControlPlaneError):
    status = 422
    reason = "InvalidTransition"


class TransportLost(ControlPlaneError):
    """Watch or connection lost; cached state can no longer be trusted."""

    status = 503
    reason = "ServiceUnavailable"


class ResourceExhausted(ControlPlaneError):
    """Unrecoverable local failure. Stops the affected component only."""

    status = 507
    reason = "ResourceExhausted"
