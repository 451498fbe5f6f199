"""Shared exception types for core trading logic."""

from typing import Optional


class BrokerError(RuntimeError):
    """Raised when the broker rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 original: Optional[Exception] = None):
        super().__init__(message)
        self.status_code = status_code
        self.original = original
