# src/domain/events.py

from dataclasses import dataclass, field
from typing import Any, Mapping

from src.domain.state_machine import PaymentEventType


@dataclass(frozen=True)
class PaymentNotification:
    """
    Identifying fields of an authenticated provider event.

    Every identifier is optional; which ones are present depends
    on the event type and on how far checkout got before the event fired.
    """

    event_id: str
    event_type: PaymentEventType
    booking_id: str | None = None
    payment_reference: str | None = None
    session_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider_event(
        cls,
        event_id: str,
        event_type: PaymentEventType,
        obj: Mapping[str, Any],
    ) -> "PaymentNotification":
        metadata = obj.get("metadata") or {}
        booking_id = _as_id(metadata.get("bookingId") or metadata.get("booking_id"))

        payment_reference = None
        session_id = None

        if event_type in (
            PaymentEventType.CHECKOUT_SESSION_COMPLETED,
            PaymentEventType.CHECKOUT_SESSION_EXPIRED,
        ):
            session_id = _as_id(obj.get("id"))
            payment_reference = _as_id(obj.get("payment_intent"))
        elif event_type in (
            PaymentEventType.PAYMENT_INTENT_CREATED,
            PaymentEventType.PAYMENT_INTENT_SUCCEEDED,
            PaymentEventType.PAYMENT_INTENT_PAYMENT_FAILED,
        ):
            payment_reference = _as_id(obj.get("id"))
        else:
            # charges and disputes point back at their payment intent
            payment_reference = _as_id(obj.get("payment_intent"))

        return cls(
            event_id=event_id,
            event_type=event_type,
            booking_id=booking_id,
            payment_reference=payment_reference,
            session_id=session_id,
            data=obj,
        )


def _as_id(value: Any) -> str | None:
    # Stripe expands some references into full objects
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None:
        return None
    value = str(value).strip()
    return value or None
