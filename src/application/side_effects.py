import logging
from datetime import datetime, timezone
from typing import Callable, Protocol

from src.domain.notifications import (
    BookingSnapshot,
    NotificationIntent,
    NotificationKind,
    SendResult,
)
from src.domain.state_machine import BookingStatus, SUCCESSFUL_STATUSES


class NotificationSender(Protocol):
    def send_booker_confirmation(self, intent: NotificationIntent) -> SendResult: ...

    def send_organizer_notification(self, intent: NotificationIntent) -> SendResult: ...


class SideEffectDispatcher:
    """
    Decides and fires the notifications for a committed transition.

    Booker and organizer notifications go out once per booking, on its
    first entry into confirmed or verified. Nothing raised here reaches
    the webhook caller; failures are logged for manual resend.
    """

    def __init__(
        self,
        sender: NotificationSender,
        recalculate_participants: Callable[[str], int] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.sender = sender
        self.recalculate_participants = recalculate_participants
        self.logger = logger or logging.getLogger(__name__)

    def plan(
        self,
        booking: BookingSnapshot,
        previous_status: BookingStatus,
        new_status: BookingStatus,
        first_success: bool,
    ) -> list[NotificationIntent]:
        if new_status not in SUCCESSFUL_STATUSES or not first_success:
            return []

        payload = _payload(booking, previous_status, new_status)
        kind = (
            NotificationKind.WHITELISTED_CONFIRMATION
            if previous_status is BookingStatus.WHITELISTED
            else NotificationKind.BOOKER_CONFIRMATION
        )
        intents = [NotificationIntent(booking.booking_id, kind, payload)]

        if booking.notify_organizer_on_booking and booking.organizer_email:
            intents.append(
                NotificationIntent(
                    booking.booking_id,
                    NotificationKind.ORGANIZER_NOTIFICATION,
                    payload,
                )
            )
        else:
            self.logger.info(
                "Skipping organizer notification. booking_id=%s reason=%s",
                booking.booking_id,
                "disabled" if not booking.notify_organizer_on_booking else "no organizer email",
            )
        return intents

    def dispatch(
        self,
        booking: BookingSnapshot,
        previous_status: BookingStatus,
        new_status: BookingStatus,
        first_success: bool,
        event_type: str,
        event_id: str,
    ) -> list[tuple[NotificationIntent, SendResult]]:
        self._recalculate(booking, event_type, event_id)

        results = []
        for intent in self.plan(booking, previous_status, new_status, first_success):
            result = self._send(intent, event_type, event_id)
            results.append((intent, result))
        return results

    def _send(
        self,
        intent: NotificationIntent,
        event_type: str,
        event_id: str,
    ) -> SendResult:
        try:
            if intent.kind is NotificationKind.ORGANIZER_NOTIFICATION:
                result = self.sender.send_organizer_notification(intent)
            else:
                result = self.sender.send_booker_confirmation(intent)
        except Exception as exc:
            self.logger.exception(
                "Notification send raised. booking_id=%s kind=%s event_type=%s "
                "event_id=%s at=%s",
                intent.booking_id,
                intent.kind.value,
                event_type,
                event_id,
                _utc_now_iso(),
            )
            return SendResult.failed(str(exc))

        if not result.success:
            self.logger.error(
                "Notification send failed. booking_id=%s kind=%s event_type=%s "
                "event_id=%s at=%s error=%s",
                intent.booking_id,
                intent.kind.value,
                event_type,
                event_id,
                _utc_now_iso(),
                result.error,
            )
        elif result.skipped:
            self.logger.info(
                "Notification skipped. booking_id=%s kind=%s reason=%s",
                intent.booking_id,
                intent.kind.value,
                result.error,
            )
        else:
            self.logger.info(
                "Notification queued. booking_id=%s kind=%s message_id=%s",
                intent.booking_id,
                intent.kind.value,
                result.message_id,
            )
        return result

    def _recalculate(
        self,
        booking: BookingSnapshot,
        event_type: str,
        event_id: str,
    ) -> None:
        if self.recalculate_participants is None:
            return
        try:
            self.recalculate_participants(booking.event_id)
        except Exception:
            self.logger.exception(
                "Participant count recalculation failed. booking_id=%s "
                "chess_event_id=%s event_type=%s event_id=%s",
                booking.booking_id,
                booking.event_id,
                event_type,
                event_id,
            )


def _payload(
    booking: BookingSnapshot,
    previous_status: BookingStatus,
    new_status: BookingStatus,
) -> dict:
    return {
        "booking_id": booking.booking_id,
        "short_code": booking.short_code,
        "previous_status": previous_status.value,
        "status": new_status.value,
        "quantity": booking.quantity,
        "total_amount": booking.total_amount,
        "booker_email": booking.booker_email,
        "booker_name": booking.booker_name or booking.booker_email,
        "event_id": booking.event_id,
        "event_title": booking.event_title,
        "event_start_date": (
            booking.event_start_date.isoformat() if booking.event_start_date else None
        ),
        "event_location": booking.event_location,
        "organizer_email": booking.organizer_email,
        "organizer_name": booking.organizer_name or booking.organizer_email,
    }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
