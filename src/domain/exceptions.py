

class ReconciliationError(Exception):
    """
    Base exception for all domain-level errors
    inside the payment reconciliation engine.
    """


class WebhookAuthenticationError(ReconciliationError):
    """Raised when an inbound notification fails signature verification."""


class CorrelationMiss(ReconciliationError):
    """
    Raised when a notification cannot be resolved to a booking.
    Acknowledged to the provider, never retried.
    """

    def __init__(self, event_id: str, event_type: str):
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(
            f"No booking found for event {event_id} ({event_type})"
        )


class TransitionConflict(ReconciliationError):
    """
    Raised when a conditional status update affected zero rows
    because another writer already moved the booking.
    """

    def __init__(self, booking_id: str, expected_status: str, new_status: str):
        self.booking_id = booking_id
        self.expected_status = expected_status
        self.new_status = new_status

        message = (
            f"Booking {booking_id} is no longer {expected_status}; "
            f"transition to {new_status} skipped"
        )
        super().__init__(message)


class ReferenceConflictError(ReconciliationError):
    """Raised when a different payment reference is already bound to a booking."""

    def __init__(self, booking_id: str, bound_reference: str, new_reference: str):
        self.booking_id = booking_id
        self.bound_reference = bound_reference
        self.new_reference = new_reference
        super().__init__(
            f"Booking {booking_id} already bound to {bound_reference}, "
            f"refusing {new_reference}"
        )


class PersistenceError(ReconciliationError):
    """
    Raised when the ledger or booking store cannot complete the transaction.
    Nothing has been committed; the provider is expected to redeliver.
    """


class SideEffectError(ReconciliationError):
    """Raised by notification senders; always recovered by the dispatcher."""
