# src/infrastructure/notifications/outbox_sender.py

import json
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.domain.exceptions import SideEffectError
from src.domain.notifications import NotificationIntent, NotificationKind, SendResult
from src.infrastructure.db.models import OutboxEvent
from src.infrastructure.db.session import SessionLocal, session_scope

logger = logging.getLogger(__name__)


def dedupe_key_for(intent: NotificationIntent) -> str:
    return f"booking:{intent.booking_id}:{intent.kind.value}"


class OutboxNotificationSender:
    """
    Hands notification intents to the email worker through the outbox table.

    Each send runs in its own session, after the booking transition has
    committed. The dedupe key makes a repeated send return the existing row.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def send_booker_confirmation(self, intent: NotificationIntent) -> SendResult:
        if intent.kind not in (
            NotificationKind.BOOKER_CONFIRMATION,
            NotificationKind.WHITELISTED_CONFIRMATION,
        ):
            raise SideEffectError(f"Not a booker confirmation: {intent.kind.value}")
        if not intent.payload.get("booker_email"):
            return SendResult.failed("Booking has no booker email")
        return self._enqueue(intent)

    def send_organizer_notification(self, intent: NotificationIntent) -> SendResult:
        if intent.kind is not NotificationKind.ORGANIZER_NOTIFICATION:
            raise SideEffectError(f"Not an organizer notification: {intent.kind.value}")
        if not intent.payload.get("organizer_email"):
            return SendResult.skip("No organizer email")
        return self._enqueue(intent)

    def _enqueue(self, intent: NotificationIntent) -> SendResult:
        dedupe_key = dedupe_key_for(intent)
        try:
            with session_scope(self.session_factory) as db:
                existing = db.execute(
                    select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
                ).scalar_one_or_none()
                if existing:
                    logger.info(
                        "Outbox entry already present. dedupe_key=%s outbox_id=%s",
                        dedupe_key,
                        existing.id,
                    )
                    return SendResult.sent(existing.id)

                entry = OutboxEvent(
                    aggregate_type="booking",
                    aggregate_id=intent.booking_id,
                    event_type=intent.kind.value.upper(),
                    payload=json.dumps(intent.payload, sort_keys=True, default=str),
                    dedupe_key=dedupe_key,
                    status="PENDING",
                    attempts=0,
                )
                db.add(entry)
                db.flush()
                return SendResult.sent(entry.id)
        except IntegrityError:
            # A concurrent send won the dedupe key.
            return SendResult.sent(None)
        except SQLAlchemyError as exc:
            raise SideEffectError(f"Outbox write failed: {exc}") from exc
