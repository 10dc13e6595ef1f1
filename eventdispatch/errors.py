"""
Error taxonomy for the dispatch core.

Registry and store errors propagate to the direct caller as typed errors.
Delivery errors are raised inside an attempt and recorded on the attempt row;
they never reach the code that emitted the event.
"""
from typing import Optional


class DispatchError(Exception):
    """Base class for every error raised by the dispatch core."""


class ValidationError(DispatchError):
    """Bad input (malformed URL, unknown event type, bad payload). Never retried."""


class NotFoundError(DispatchError):
    """Unknown endpoint, delivery attempt or notification id."""


class InvalidStateError(DispatchError):
    """Operation not allowed in the current state (e.g. retrying a success)."""


class PersistenceError(DispatchError):
    """The store failed to read or write. Fatal to the enclosing operation."""


class DeliveryError(DispatchError):
    """A single webhook attempt failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientDeliveryError(DeliveryError):
    """Network error, timeout, 429 or 5xx."""


class PermanentDeliveryError(DeliveryError):
    """4xx other than 429. Still retried on the fixed schedule."""


class LockTimeoutError(InvalidStateError):
    """Another attempt for the same (event, endpoint) pair held the delivery lock past the wait."""
