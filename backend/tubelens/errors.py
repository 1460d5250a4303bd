"""
Error taxonomy shared by the engine, the workflows, and the HTTP layer.

Every error carries a stable ``code`` and the HTTP status the API maps it to.
"""


class TubelensError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TubelensError):
    """Malformed key, version, or input. No run is created."""

    status_code = 400
    code = "validation_error"


class NotFoundError(TubelensError):
    status_code = 404
    code = "not_found"


class RunNotFoundError(NotFoundError):
    code = "run_not_found"


class EventLogNotFoundError(NotFoundError):
    """The run's event log is unknown to this process or past its retention window."""

    code = "event_log_not_found"


class TranscriptNotFoundError(NotFoundError):
    code = "transcript_not_found"


class ConflictError(TubelensError):
    status_code = 409
    code = "conflict"


class DependencyError(TubelensError):
    """An external collaborator failed after its own retries."""

    status_code = 502
    code = "dependency_error"


class InvalidTransition(TubelensError):
    """Run state invariant violated. Never reachable through normal API usage."""

    code = "invalid_transition"


class EventLogClosedError(InvalidTransition):
    code = "event_log_closed"


class StreamDetached(TubelensError):
    """A reader's connection dropped. Ends that reader only."""

    status_code = 499
    code = "stream_detached"
