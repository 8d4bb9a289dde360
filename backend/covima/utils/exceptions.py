# /covima/utils/exceptions.py

# Domain errors raised by services and handled by the handlers or the router.


class CovimaError(Exception):
    """Base class for bot errors."""


class FlowContextError(CovimaError):
    """The persisted flow payload is missing or cannot be decoded for its estado."""

    def __init__(self, estado: str, detail: str = ""):
        self.estado = estado
        self.detail = detail
        super().__init__(f"Invalid flow context for estado '{estado}': {detail}")


class DuplicateAttendanceError(CovimaError):
    """An attendance row already exists for the same identity, week and type."""


class ClassifierError(CovimaError):
    """The remote intent classifier failed or returned unusable output."""


class MessagingError(CovimaError):
    """The messaging provider rejected or failed a request."""


class CircuitOpenError(CovimaError):
    """Raised when a call is blocked by an open circuit breaker."""
