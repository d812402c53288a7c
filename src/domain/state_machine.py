# src/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Set


class BookingStatus(str, Enum):
    PENDING = "pending"
    WHITELISTED = "whitelisted"
    CONFIRMED = "confirmed"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_DISPUTE_CREATED = "charge.dispute.created"

    @classmethod
    def parse(cls, value: str) -> "PaymentEventType | None":
        try:
            return cls(value)
        except ValueError:
            return None


SUCCESSFUL_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.VERIFIED})


@dataclass(frozen=True)
class TransitionDecision:
    current_status: BookingStatus
    new_status: BookingStatus
    transitioned: bool


class BookingStateMachine:
    """
    Authoritative transition table for payment notifications.

    Every (event type, current status) pair not listed is a no-op:
    the booking keeps its status and the event is still acknowledged.
    """

    _TRANSITIONS: Dict[PaymentEventType, tuple[Set[BookingStatus], BookingStatus]] = {
        PaymentEventType.CHECKOUT_SESSION_COMPLETED: (
            {BookingStatus.PENDING},
            BookingStatus.CONFIRMED,
        ),
        PaymentEventType.PAYMENT_INTENT_CREATED: (
            {BookingStatus.PENDING},
            BookingStatus.VERIFIED,
        ),
        # "any except verified", bounded by the terminal/final states below
        PaymentEventType.PAYMENT_INTENT_SUCCEEDED: (
            {
                BookingStatus.PENDING,
                BookingStatus.WHITELISTED,
                BookingStatus.CONFIRMED,
                BookingStatus.FAILED,
            },
            BookingStatus.VERIFIED,
        ),
        PaymentEventType.CHARGE_SUCCEEDED: (
            {
                BookingStatus.PENDING,
                BookingStatus.WHITELISTED,
                BookingStatus.CONFIRMED,
                BookingStatus.FAILED,
            },
            BookingStatus.VERIFIED,
        ),
        PaymentEventType.PAYMENT_INTENT_PAYMENT_FAILED: (
            {
                BookingStatus.PENDING,
                BookingStatus.CONFIRMED,
                BookingStatus.VERIFIED,
            },
            BookingStatus.FAILED,
        ),
        PaymentEventType.CHARGE_DISPUTE_CREATED: (
            {BookingStatus.CONFIRMED, BookingStatus.VERIFIED},
            BookingStatus.DISPUTED,
        ),
        PaymentEventType.CHECKOUT_SESSION_EXPIRED: (
            {BookingStatus.PENDING},
            BookingStatus.CANCELLED,
        ),
    }

    _TERMINAL: Set[BookingStatus] = {
        BookingStatus.CANCELLED,
        BookingStatus.REFUNDED,
    }

    @classmethod
    def next_state(
        cls,
        current_status: BookingStatus,
        event_type: PaymentEventType,
        event_data: Mapping[str, Any] | None = None,
    ) -> TransitionDecision:
        """
        Returns the decision for applying event_type to a booking
        currently in current_status. Never raises for a legal enum pair.
        """
        cls._ensure_valid_status(current_status)
        if not isinstance(event_type, PaymentEventType):
            raise TypeError(
                f"Expected PaymentEventType, got {type(event_type)}"
            )

        valid_from, target = cls._TRANSITIONS[event_type]
        if current_status in valid_from and current_status not in cls._TERMINAL:
            return TransitionDecision(current_status, target, True)
        return TransitionDecision(current_status, current_status, False)

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if no event can move the booking out of status.
        """
        cls._ensure_valid_status(status)
        return status in cls._TERMINAL

    @classmethod
    def triggers_hold_release(cls, event_type: PaymentEventType) -> bool:
        return event_type is PaymentEventType.CHECKOUT_SESSION_EXPIRED

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
