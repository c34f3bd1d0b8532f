"""Error taxonomy for provisioning requests and workflow commands."""
from __future__ import annotations

from typing import Any, Dict, Optional


class ProvisioningError(Exception):
    """Base class for all orchestrator errors.

    Every error carries a stable ``code`` plus the offending ``field`` (for
    validation errors) or ``step`` (for execution errors) so callers can render
    a message without parsing free text.
    """

    code = "ProvisioningError"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.step = step
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.field:
            payload["field"] = self.field
        if self.step:
            payload["step"] = self.step
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ProvisioningError):
    """Raised synchronously before any workflow record exists."""

    code = "ValidationError"


class InvalidName(ValidationError):
    code = "InvalidName"


class InvalidQuantity(ValidationError):
    code = "InvalidQuantity"


class RequestExceedsLimit(ValidationError):
    code = "RequestExceedsLimit"


class UnknownPoolType(ValidationError):
    code = "UnknownPoolType"


class AlreadyExists(ProvisioningError):
    code = "AlreadyExists"


class ConflictingWorkflow(ProvisioningError):
    code = "ConflictingWorkflow"


class NotFound(ProvisioningError):
    code = "NotFound"


class InvalidState(ProvisioningError):
    code = "InvalidState"


class UnknownStep(ProvisioningError):
    code = "UnknownStep"


class ObservationTimeout(ProvisioningError):
    code = "ObservationTimeout"


class EngineUnavailable(ProvisioningError):
    code = "EngineUnavailable"


class StepExecutionError(ProvisioningError):
    """Generic failure reported by a step's external call."""

    code = "StepFailed"


__all__ = [
    "ProvisioningError",
    "ValidationError",
    "InvalidName",
    "InvalidQuantity",
    "RequestExceedsLimit",
    "UnknownPoolType",
    "AlreadyExists",
    "ConflictingWorkflow",
    "NotFound",
    "InvalidState",
    "UnknownStep",
    "ObservationTimeout",
    "EngineUnavailable",
    "StepExecutionError",
]
