"""Error taxonomy for room and race operations.

Services raise these synchronously; the HTTP blueprint maps them to JSON
error bodies and the socket handlers to ``error`` events.
"""


class RaceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message}


class ValidationError(RaceError):
    status_code = 400


class PermissionDenied(RaceError):
    """A caller tried a host-only operation or acted for another session."""
    status_code = 403


class NotFoundError(RaceError):
    status_code = 404


class PreconditionError(RaceError):
    """The room is not in a state that allows the operation."""
    status_code = 409
