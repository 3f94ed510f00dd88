"""Error kinds raised by timer commands.

Every failure carries a stable ``kind`` string (sent to clients as the
``error`` field) and the HTTP status the API answers with.  A project code
with no record is *not* an error: the store reports it as a ``None``
snapshot.
"""


class TimerError(Exception):
    kind = 'TimerError'
    status_code = 400

    def __init__(self, message: str = ''):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {'error': self.kind, 'message': self.message}


class InvalidDuration(TimerError):
    kind = 'InvalidDuration'
    status_code = 400


class InvalidProjectCode(TimerError):
    kind = 'InvalidProjectCode'
    status_code = 400


class NotConfigured(TimerError):
    kind = 'NotConfigured'
    status_code = 409


class PermissionDenied(TimerError):
    kind = 'PermissionDenied'
    status_code = 403


class StoreUnavailable(TimerError):
    kind = 'StoreUnavailable'
    status_code = 503


class CorruptRecord(StoreUnavailable):
    """A stored record violates the timer invariants (e.g. running with no start time)."""
