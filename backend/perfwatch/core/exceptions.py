"""Custom exceptions for perfwatch."""


class PerfwatchError(Exception):
    """Base class for all perfwatch errors."""

    def __init__(self, reason: str = "unknown"):
        self.reason = reason
        super().__init__(reason)


class CollectorError(PerfwatchError):
    """Raised by a collector adapter when a sample cannot be produced."""


class ConnectivityError(CollectorError):
    """The server could not be reached. Transient."""


class CollectorPermissionError(CollectorError):
    """The monitoring login lacks a permission the collector needs."""


class QueryTimeoutError(CollectorError):
    """The collector query exceeded the server-side command timeout. Transient."""


class UnsupportedOnThisServerVersion(CollectorError):
    """The collector does not apply to this server's version or edition."""


class ValidationError(PerfwatchError):
    """Raised when a configuration or API input is rejected."""


class NotFoundError(PerfwatchError):
    """Raised when a server, table or other named entity does not exist."""


class SchemaVersionError(PerfwatchError):
    """The on-disk schema is newer than this build supports. Fatal at startup."""

    def __init__(self, on_disk: int | str, supported: int):
        self.on_disk = on_disk
        self.supported = supported
        super().__init__(
            f"database schema version {on_disk} is newer than supported version {supported}"
        )


class StoreWriteError(PerfwatchError):
    """A store write was rolled back. Data from that batch was not persisted."""
