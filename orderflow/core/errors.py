"""
Order Pipeline — Error taxonomy

Every domain error carries the HTTP status it maps to and an optional payload
that is merged into the JSON error body by the app-level exception handler.
"""
from typing import Any


class PipelineError(Exception):
    status_code: int = 500

    def __init__(self, message: str, **payload: Any):
        super().__init__(message)
        self.message = message
        self.payload = payload


class ValidationError(PipelineError):
    """Bad input. Never retried."""
    status_code = 400


class InvalidArgument(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class NotFound(PipelineError):
    status_code = 404


class PermissionDenied(PipelineError):
    status_code = 403


class Conflict(PipelineError):
    status_code = 409


class DuplicateKey(Conflict):
    pass


class PaymentAlreadyConfirmed(Conflict):
    pass


class UpdateFailed(PipelineError):
    status_code = 500


class TransientError(PipelineError):
    status_code = 503


class GatewayError(PipelineError):
    """Payment gateway answered with a non-retryable failure."""
    status_code = 502


class NotificationError(PipelineError):
    """Raised by the dispatcher. Callers log it and carry on."""
    status_code = 502
