# src/infrastructure/repositories/seat_repository.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from src.infrastructure.db.models import Booking, DiscountCode, Event
from src.domain.state_machine import SUCCESSFUL_STATUSES


class SeatRepository:

    def __init__(self, db: Session):
        self.db = db

    def lock_event(self, event_id: str) -> Event:
        """
        SELECT ... FOR UPDATE
        Serializes seat counter changes for one event.
        """

        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .with_for_update()
        )

        event = self.db.execute(stmt).scalar_one_or_none()

        if not event:
            raise ValueError("Event not found")

        return event

    def claim_hold_release(
        self,
        booking_id: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Marks the booking's hold as released.
        Only the first caller gets True; the hold is released at most once.
        """
        now = now or datetime.now(timezone.utc)
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.hold_released_at.is_(None))
            .values(hold_released_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def increment_inventory(
        self,
        event_id: str,
        seat_count: int,
    ) -> None:

        event = self.lock_event(event_id)
        event.available_seats = min(
            event.total_seats,
            event.available_seats + seat_count,
        )

    def release_discount_use(self, discount_code_id: str) -> None:
        stmt = (
            update(DiscountCode)
            .where(DiscountCode.id == discount_code_id)
            .where(DiscountCode.times_used > 0)
            .values(times_used=DiscountCode.times_used - 1)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def recalculate_participant_count(self, event_id: str) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(Booking.quantity), 0))
            .where(Booking.event_id == event_id)
            .where(Booking.status.in_(list(SUCCESSFUL_STATUSES)))
        ).scalar_one()

        self.db.execute(
            update(Event)
            .where(Event.id == event_id)
            .values(participant_count=total)
            .execution_options(synchronize_session=False)
        )
        return int(total)
