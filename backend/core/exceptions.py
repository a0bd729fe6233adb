"""Custom exceptions for the banking workflow engine."""

from typing import Optional


class EngineError(Exception):
    """Base exception for the banking workflow engine."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineError):
    """Resource not found exception."""

    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(EngineError):
    """Field-level validation failure, recoverable by resubmission."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        field_errors: Optional[dict[str, str]] = None,
    ):
        """Initialize ValidationError with 422 status code."""
        self.field_errors = field_errors or {}
        super().__init__(message, 422)


class UnresolvedReference(EngineError):
    """A template referenced a path missing from the execution context."""

    code = "UNRESOLVED_REFERENCE"

    def __init__(self, path: str, template: Optional[str] = None):
        self.path = path
        self.template = template
        message = f"Unresolved reference '{path}'"
        if template is not None:
            message += f" in template {template!r}"
        super().__init__(message, 422)


class OutOfSequence(EngineError):
    """A step was invoked out of order."""

    code = "OUT_OF_SEQUENCE"

    def __init__(self, message: str = "Step called out of sequence"):
        super().__init__(message, 409)


class AdapterError(EngineError):
    """An external service call failed."""

    code = "ADAPTER_ERROR"

    def __init__(self, message: str = "External service call failed", status_code: int = 502):
        super().__init__(message, status_code)


class AdapterTimeout(AdapterError):
    """An external service call did not answer in time."""

    code = "ADAPTER_TIMEOUT"

    def __init__(self, message: str = "External service call timed out"):
        super().__init__(message, 504)


class TerminalStateViolation(EngineError):
    """Attempt to mutate an entity that is already in a terminal state."""

    code = "TERMINAL_STATE"

    def __init__(self, message: str = "Entity is in a terminal state"):
        super().__init__(message, 409)


class ConflictError(EngineError):
    """Resource conflict exception."""

    code = "CONFLICT"

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)
