# src/domain/notifications.py

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict


class NotificationKind(str, Enum):
    BOOKER_CONFIRMATION = "booker_confirmation"
    WHITELISTED_CONFIRMATION = "whitelisted_confirmation"
    ORGANIZER_NOTIFICATION = "organizer_notification"


@dataclass(frozen=True)
class BookingSnapshot:
    """Read-only copy of a booking taken before commit, used after it."""

    booking_id: str
    short_code: str
    event_id: str
    status: str
    quantity: int
    total_amount: int
    booker_email: str | None
    booker_name: str | None
    payment_reference: str | None
    created_at: datetime | None
    event_title: str | None = None
    event_start_date: datetime | None = None
    event_location: str | None = None
    organizer_email: str | None = None
    organizer_name: str | None = None
    notify_organizer_on_booking: bool = False


@dataclass(frozen=True)
class NotificationIntent:
    booking_id: str
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    skipped: bool = False

    @classmethod
    def sent(cls, message_id: str | None = None) -> "SendResult":
        return cls(success=True, message_id=message_id)

    @classmethod
    def skip(cls, reason: str) -> "SendResult":
        return cls(success=True, skipped=True, error=reason)

    @classmethod
    def failed(cls, error: str) -> "SendResult":
        return cls(success=False, error=error)
