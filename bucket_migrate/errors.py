"""Exception hierarchy for the bucket migration tool."""


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class ConfigurationError(MigrationError):
    """Raised before any work starts when required configuration is missing."""

    pass


class StoreError(MigrationError):
    """Exception raised when a storage backend operation fails."""

    pass


class StoreConnectionError(StoreError):
    """Exception raised when connecting to a storage backend fails."""

    pass


class EnumerationError(MigrationError):
    """Exception raised when the source listing cannot be continued."""

    pass
