"""
Store errors - Failure taxonomy for object store operations.

Reconcilers branch on these types rather than on driver-specific exceptions,
similar to the Kubernetes apimachinery error helpers.
"""


class StoreError(Exception):
    """Base class for object store errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when the requested object or API type does not exist."""


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose identity is already taken."""


class ConflictError(StoreError):
    """Raised when an update carries a stale resourceVersion."""


class InvalidObjectError(StoreError):
    """Raised when an object or embedded definition is malformed."""
