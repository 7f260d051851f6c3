"""Workflow error taxonomy.

Services raise these; a single Flask error handler (registered in
create_app) turns them into ``{"error": kind, "message": text}`` JSON
with the matching HTTP status code.
"""


class PointTrackerError(Exception):
    """Base class for recoverable business-rule failures."""

    kind = "error"
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class Forbidden(PointTrackerError):
    """Actor lacks the role required for the requested action."""

    kind = "forbidden"
    status_code = 403


class ValidationError(PointTrackerError):
    """Malformed input (missing reason, zero points, bad role, ...)."""

    kind = "validation_error"
    status_code = 422


class InvalidState(PointTrackerError):
    """Transition attempted from a state that does not allow it."""

    kind = "invalid_state"
    status_code = 409


class NotFound(PointTrackerError):
    """Referenced user or assignment does not exist."""

    kind = "not_found"
    status_code = 404
