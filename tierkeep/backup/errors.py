"""
Exception types raised by the storage lifecycle engine.

Routes and the scheduler catch these to turn failures into history records
and JSON error responses.
"""


class ConfigurationError(Exception):
    """Raised when required settings (credentials, endpoint, bucket) are missing."""
    pass


class StorageError(Exception):
    """Raised when a storage backend operation fails."""
    pass


class ObjectNotFound(StorageError):
    """Raised when a hot tier key does not exist."""
    pass


class IntegrityError(StorageError):
    """Raised when data read back from a backend does not match what was written."""
    pass


class UnsupportedOperation(StorageError):
    """Raised for operations a backend cannot perform synchronously."""
    pass


class TransportError(Exception):
    """Raised when a local or remote command fails."""

    def __init__(self, message: str, stderr: str = '', exit_status: int = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_status = exit_status


class TransferError(Exception):
    """Raised when a capture-to-storage transfer fails its primary guarantee."""

    def __init__(self, message: str, outcome=None):
        super().__init__(message)
        self.outcome = outcome


class RangeError(ValueError):
    """Raised for malformed or out-of-bounds selection ranges."""
    pass


class CapacityBoundExceeded(Exception):
    """Raised when the capacity monitor runs out of iterations."""

    def __init__(self, iterations: int, used_percent: float, threshold: float, report=None):
        super().__init__(
            f"Storage capacity still exceeds threshold ({used_percent:.1f}% > {threshold:.1f}%) "
            f"after {iterations} iterations"
        )
        self.iterations = iterations
        self.used_percent = used_percent
        self.threshold = threshold
        self.report = report


class ConfirmationRequired(Exception):
    """Raised when a destructive action is requested without confirmation."""
    pass


class EstimationError(Exception):
    """Raised when no capacity measurement could be produced."""
    pass


class InvalidParameter(ValueError):
    """Raised for a request parameter of the wrong type or value."""
    pass
