import logging
from dataclasses import dataclass
from enum import Enum

from src.domain.events import PaymentNotification
from src.domain.exceptions import ReferenceConflictError
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository


class CorrelationTier(str, Enum):
    METADATA_ID = "metadata_id"
    PAYMENT_REFERENCE = "payment_reference"
    SESSION_ID = "session_id"
    RECENT_PENDING = "recent_pending"


@dataclass(frozen=True)
class Correlation:
    booking: Booking
    tier: CorrelationTier

    @property
    def degraded(self) -> bool:
        return self.tier is CorrelationTier.RECENT_PENDING


class BookingCorrelator:
    """
    Resolves a notification to exactly one booking.

    Tiers are tried in order and the first hit wins. The metadata booking
    id comes first because the checkout flow asserted it. The recent-pending
    heuristic is off unless explicitly enabled: under concurrent checkouts
    it can bind a payment to the wrong booking.
    """

    def __init__(
        self,
        booking_repository: BookingRepository,
        enable_recent_pending_fallback: bool = False,
        recent_pending_window_minutes: int = 30,
        logger: logging.Logger | None = None,
    ):
        self.booking_repository = booking_repository
        self.enable_recent_pending_fallback = enable_recent_pending_fallback
        self.recent_pending_window_minutes = recent_pending_window_minutes
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, notification: PaymentNotification) -> Correlation | None:
        if notification.booking_id:
            booking = self.booking_repository.get_by_id(notification.booking_id)
            if booking:
                return self._found(notification, booking, CorrelationTier.METADATA_ID)

        if notification.payment_reference:
            booking = self.booking_repository.get_by_reference(notification.payment_reference)
            if booking:
                return self._found(notification, booking, CorrelationTier.PAYMENT_REFERENCE)

        if notification.session_id:
            booking = self.booking_repository.get_by_session_id(notification.session_id)
            if booking:
                self._bind_from_session(notification, booking)
                return self._found(notification, booking, CorrelationTier.SESSION_ID)

        if self.enable_recent_pending_fallback:
            candidates = self.booking_repository.get_most_recent_unbound_pending(
                self.recent_pending_window_minutes
            )
            if len(candidates) == 1:
                self.logger.warning(
                    "Confidence-degraded correlation via recent pending booking. "
                    "event_id=%s event_type=%s booking_id=%s window_minutes=%s",
                    notification.event_id,
                    notification.event_type.value,
                    candidates[0].id,
                    self.recent_pending_window_minutes,
                )
                return Correlation(candidates[0], CorrelationTier.RECENT_PENDING)
            if candidates:
                self.logger.warning(
                    "Recent pending fallback ambiguous, refusing to guess. "
                    "event_id=%s event_type=%s",
                    notification.event_id,
                    notification.event_type.value,
                )

        return None

    def _bind_from_session(
        self,
        notification: PaymentNotification,
        booking: Booking,
    ) -> None:
        reference = notification.payment_reference
        if not reference:
            return
        try:
            if self.booking_repository.bind_reference(booking.id, reference):
                self.logger.info(
                    "Bound payment reference from checkout session. "
                    "booking_id=%s session_id=%s payment_reference=%s",
                    booking.id,
                    notification.session_id,
                    reference,
                )
        except ReferenceConflictError as exc:
            self.logger.warning(
                "Payment reference conflict during session correlation. "
                "booking_id=%s event_id=%s detail=%s",
                booking.id,
                notification.event_id,
                exc,
            )

    def _found(
        self,
        notification: PaymentNotification,
        booking: Booking,
        tier: CorrelationTier,
    ) -> Correlation:
        self.logger.debug(
            "Correlated event. event_id=%s booking_id=%s tier=%s",
            notification.event_id,
            booking.id,
            tier.value,
        )
        return Correlation(booking, tier)
