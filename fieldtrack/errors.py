from __future__ import annotations


class FieldtrackError(Exception):
    """Base class for pipeline errors."""


class ConfigError(FieldtrackError, ValueError):
    """Raised when env configuration is invalid."""


class SensorUnavailable(FieldtrackError):
    """Position or battery could not be read."""


class SignalUnresolvable(FieldtrackError):
    """A signal source answered with something that is not a strength value."""


class SignalSourceUnavailable(SignalUnresolvable):
    """The signal source cannot be used from the current execution context."""


class ConnectivityUnknown(FieldtrackError):
    """The connectivity probe itself failed."""


class RemoteError(FieldtrackError):
    """Remote insert failed. Callers buffer locally regardless of subtype."""


class RemoteTimeout(RemoteError):
    pass


class RemoteRejected(RemoteError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(FieldtrackError):
    """The local list store could not be read or written."""


class PersistenceFailure(FieldtrackError):
    """A backlog write did not reach durable storage."""


class PersistenceCorrupt(FieldtrackError):
    """A single stored backlog entry could not be parsed."""
