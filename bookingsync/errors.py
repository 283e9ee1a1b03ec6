"""Exception hierarchy for bookingsync."""


class BookingSyncError(Exception):
    """Base exception for all bookingsync errors."""


class RecordValidationError(BookingSyncError):
    """Mutation input rejected at the boundary."""


class TransportError(BookingSyncError):
    """Persistent channel failure (connect, send or receive)."""

    def __init__(self, message: str, *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class SyncError(BookingSyncError):
    """Catch-up or snapshot query failed.

    Local state is left untouched when this is raised; ``retryable`` tells the
    caller whether backing off and trying again can help.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)
