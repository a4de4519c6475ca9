"""Storage error taxonomy.

Callers map these to transport-level responses: ConstraintViolationError
to "already exists", TransientIOError and ConfigurationError to a generic
retry-later message.
"""


class StorageError(Exception):
    """Base exception for storage operations."""

    pass


class ConfigurationError(StorageError):
    """Missing or invalid backend configuration. Fatal at startup, never retried."""

    pass


class ConstraintViolationError(StorageError):
    """Uniqueness or referential constraint rejected a write."""

    pass


class TransientIOError(StorageError):
    """Connection loss, timeout or other failure worth retrying."""

    pass


class UnsupportedOperationError(StorageError):
    """The active backend does not implement this capability."""

    pass
