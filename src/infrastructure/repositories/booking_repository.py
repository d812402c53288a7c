# src/infrastructure/repositories/booking_repository.py

from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from src.infrastructure.db.models import Booking
from src.domain.exceptions import ReferenceConflictError
from src.domain.state_machine import BookingStatus, SUCCESSFUL_STATUSES


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        fresh: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if fresh:
            # Overwrite whatever the identity map holds with the stored row.
            stmt = stmt.execution_options(populate_existing=True)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_reference(
        self,
        payment_reference: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.payment_reference == payment_reference)
            .order_by(Booking.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_session_id(
        self,
        session_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.session_id == session_id)
            .order_by(Booking.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_most_recent_unbound_pending(
        self,
        window_minutes: int,
        now: datetime | None = None,
    ) -> list[Booking]:
        """
        Pending bookings without a payment reference created inside
        the window, newest first. At most two rows are returned so the
        caller can tell a unique candidate from an ambiguous one.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=window_minutes)

        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.payment_reference.is_(None))
            .where(Booking.created_at >= cutoff)
            .order_by(Booking.created_at.desc())
            .limit(2)
        )
        return list(self.db.execute(stmt).unique().scalars().all())

    def reference_owner(self, payment_reference: str) -> str | None:
        stmt = (
            select(Booking.id)
            .where(Booking.payment_reference == payment_reference)
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def bind_reference(
        self,
        booking_id: str,
        payment_reference: str,
    ) -> bool:
        """
        Binds payment_reference if the booking has none.

        Returns True when a new binding was written, False when the same
        reference was already bound. Raises ReferenceConflictError when a
        different reference is bound, either on this booking or elsewhere.
        """
        owner = self.reference_owner(payment_reference)
        if owner is not None and owner != booking_id:
            raise ReferenceConflictError(
                booking_id=booking_id,
                bound_reference=f"(held by booking {owner})",
                new_reference=payment_reference,
            )

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.payment_reference.is_(None))
            .values(payment_reference=payment_reference)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 1:
            return True

        current = self.db.execute(
            select(Booking.payment_reference).where(Booking.id == booking_id)
        ).scalar_one_or_none()
        if current == payment_reference:
            return False
        raise ReferenceConflictError(
            booking_id=booking_id,
            bound_reference=str(current),
            new_reference=payment_reference,
        )

    def conditional_update_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        new_reference: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Compare-and-swap on the booking status.

        The reference is written only when none is bound yet, and
        first_confirmed_at only on the first entry into a successful status.
        Returns False when no row matched expected_status.
        """
        now = now or datetime.now(timezone.utc)
        values: dict = {"status": new_status}

        if new_reference is not None:
            values["payment_reference"] = func.coalesce(
                Booking.payment_reference,
                new_reference,
            )
        if new_status in SUCCESSFUL_STATUSES:
            values["first_confirmed_at"] = func.coalesce(
                Booking.first_confirmed_at,
                now,
            )

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def list_stale_pending(
        self,
        older_than_minutes: int,
        now: datetime | None = None,
    ) -> list[str]:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=older_than_minutes)

        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at < cutoff)
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_unreleased_cancelled(self) -> list[str]:
        """Cancelled bookings whose seat hold was never given back."""
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.CANCELLED)
            .where(Booking.hold_released_at.is_(None))
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
