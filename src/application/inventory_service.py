import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.domain.state_machine import BookingStatus
from src.infrastructure.db.session import SessionLocal, session_scope
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.seat_repository import SeatRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseResult:
    success: bool
    released: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SweepResult:
    cancelled: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class InventoryService:
    """Application service for seat holds and event counters.

    Every operation opens its own session and is safe to repeat: the
    expiry webhook and the scheduled sweep may both release the same hold.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def release_booking_hold(self, booking_id: str) -> ReleaseResult:
        try:
            with session_scope(self.session_factory) as db:
                booking = BookingRepository(db).get_by_id(booking_id)
                if not booking:
                    return ReleaseResult(success=False, errors=["Booking not found"])
                if booking.status is not BookingStatus.CANCELLED:
                    return ReleaseResult(
                        success=False,
                        errors=[f"Booking is {booking.status.value}; hold kept"],
                    )

                seats = SeatRepository(db)
                if not seats.claim_hold_release(booking_id):
                    logger.debug("Hold already released. booking_id=%s", booking_id)
                    return ReleaseResult(success=True, released=False)

                seats.increment_inventory(booking.event_id, booking.quantity)
                if booking.discount_code_id:
                    seats.release_discount_use(booking.discount_code_id)
        except (SQLAlchemyError, ValueError) as exc:
            logger.error(
                "Hold release failed. booking_id=%s error=%s",
                booking_id,
                exc,
            )
            return ReleaseResult(success=False, errors=[str(exc)])

        logger.info("Released booking hold. booking_id=%s", booking_id)
        return ReleaseResult(success=True, released=True)

    def recalculate_participant_count(self, event_id: str) -> int:
        with session_scope(self.session_factory) as db:
            return SeatRepository(db).recalculate_participant_count(event_id)

    def sweep_stale_pending(self, older_than_minutes: int = 60) -> SweepResult:
        with session_scope(self.session_factory) as db:
            candidates = BookingRepository(db).list_stale_pending(older_than_minutes)

        cancelled: list[str] = []
        errors: list[str] = []
        for booking_id in candidates:
            with session_scope(self.session_factory) as db:
                moved = BookingRepository(db).conditional_update_status(
                    booking_id,
                    expected_status=BookingStatus.PENDING,
                    new_status=BookingStatus.CANCELLED,
                )
            if not moved:
                # A webhook advanced it after the listing.
                continue

            cancelled.append(booking_id)
            result = self.release_booking_hold(booking_id)
            errors.extend(f"{booking_id}: {error}" for error in result.errors)

        # Expired bookings whose post-commit release failed or never ran.
        with session_scope(self.session_factory) as db:
            unreleased = BookingRepository(db).list_unreleased_cancelled()

        released: list[str] = []
        for booking_id in unreleased:
            result = self.release_booking_hold(booking_id)
            if result.released:
                released.append(booking_id)
            errors.extend(f"{booking_id}: {error}" for error in result.errors)

        logger.info(
            "Stale pending sweep finished. cancelled=%s released=%s errors=%s",
            len(cancelled),
            len(released),
            len(errors),
        )
        return SweepResult(cancelled=cancelled, released=released, errors=errors)
