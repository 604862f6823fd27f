"""
ParcelDesk - Error taxonomy.

Adapters translate backend-native exceptions into these types at their
boundary, so callers can map failures to user-visible responses without
knowing which backend is active.

    DeskError
    ├── DataError
    │   ├── ValidationError       malformed filter/input, rejected before any I/O
    │   ├── ConstraintError       uniqueness / foreign-key violations
    │   ├── ConnectivityError     backend unreachable or timed out
    │   └── UnsupportedOperation  not implementable on the active backend
    ├── AuthenticationError       socket handshake rejected
    └── PermissionDenied          role or ownership gate
"""


class DeskError(Exception):
    """Base class for all ParcelDesk errors."""


class DataError(DeskError):
    """Base class for data-layer failures."""


class ValidationError(DataError):
    """Input or filter is malformed."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ConstraintError(DataError):
    """A uniqueness, foreign-key, or referential rule was violated."""

    def __init__(self, message: str, constraint: str | None = None):
        super().__init__(message)
        self.constraint = constraint


class ConnectivityError(DataError):
    """The backend is unreachable, refused the connection, or timed out."""


class UnsupportedOperation(DataError):
    """The requested operation has no implementation on the active backend."""

    def __init__(self, operation: str, backend: str):
        super().__init__(f"{operation} is not supported by the {backend} backend")
        self.operation = operation
        self.backend = backend


class AuthenticationError(DeskError):
    """
    A realtime handshake was rejected.

    `transient` is True when the rejection came from a backend failure
    rather than from the credentials, so clients can decide to retry.
    """

    def __init__(self, reason: str, transient: bool = False):
        super().__init__(f"Authentication error: {reason}")
        self.reason = reason
        self.transient = transient


class PermissionDenied(DeskError):
    """The acting account may not perform this operation."""
