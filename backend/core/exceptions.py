"""Custom exceptions for the playbook engine."""

from typing import Optional


class EngineException(Exception):
    """Base exception for the playbook engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP-style status code for the surrounding application
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(EngineException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(EngineException):
    """Resource conflict exception (version mismatch, lost claim)."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class DefinitionError(ValidationError):
    """Malformed workflow definition.

    Raised at creation/validation time for dangling branch pointers,
    duplicate step orders or keys, reachable cycles, and unknown step types.
    """

    def __init__(self, message: str = "Invalid workflow definition", problems: Optional[list[str]] = None):
        self.problems = problems or [message]
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    """Execution state machine violation."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid execution transition: {from_status} -> {to_status}")


class ResolutionError(EngineException):
    """An expression references a path that does not (yet) exist.

    Only raised by strict resolution; the default resolver yields None.
    """

    def __init__(self, expression: str, reason: str = "path not found"):
        self.expression = expression
        super().__init__(f"Cannot resolve '{expression}': {reason}", 422)


class HandlerError(EngineException):
    """A step handler failed. Retryable up to the step's max retries."""

    def __init__(self, message: str, retryable: bool = True, detail: Optional[str] = None):
        self.retryable = retryable
        self.detail = detail
        super().__init__(message, 500)


class StepTimeoutError(EngineException):
    """A step attempt exceeded its timeout."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Step timed out after {timeout_ms}ms", 504)


class FatalExecutionError(EngineException):
    """The execution itself cannot continue and transitions to FAILED."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(message, 500)
