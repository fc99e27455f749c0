"""Error taxonomy for IncidentDesk operations.

Every engine, store and resolver failure is raised as a subclass of
IncidentDeskError. Each class carries the HTTP status used by the API
error handler and a ``retryable`` flag so callers can tell a permanent
refusal apart from a transient failure worth retrying.
"""


class IncidentDeskError(Exception):
    """Base class for all IncidentDesk errors."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "retryable": self.retryable,
            **self.context,
        }


class ValidationError(IncidentDeskError):
    """Missing or malformed input fields."""

    status_code = 422


class NotFoundError(IncidentDeskError):
    """Unknown incident, user, notification or category id."""

    status_code = 404


class InvalidTransitionError(IncidentDeskError):
    """The requested status change is not in the transition table."""

    status_code = 409


class NotAvailableError(IncidentDeskError):
    """The responder is not eligible for assignment."""

    status_code = 409


class PermissionDeniedError(IncidentDeskError):
    """The actor's role lacks the capability for this mutation."""

    status_code = 403


class ConflictError(IncidentDeskError):
    """Concurrent writers kept winning the version check."""

    status_code = 409
    retryable = True


class OperationTimeoutError(IncidentDeskError, TimeoutError):
    """A store operation did not complete within the configured timeout."""

    status_code = 504
    retryable = True
