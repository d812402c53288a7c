from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.application.inventory_service import InventoryService, ReleaseResult
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import DiscountCode, Event
from tests.stripe_helpers import stripe_object


def _event(session_factory, event_id):
    with session_factory() as session:
        return session.execute(select(Event).where(Event.id == event_id)).scalar_one()


def _times_used(session_factory, code_id):
    with session_factory() as session:
        return session.execute(
            select(DiscountCode.times_used).where(DiscountCode.id == code_id)
        ).scalar_one()


def test_release_returns_seats_and_discount_once(
    session_factory, chess_event, make_booking, discount_code
):
    booking_id = make_booking(
        status=BookingStatus.CANCELLED,
        quantity=2,
        discount_code_id=discount_code,
    )
    service = InventoryService(session_factory)

    first = service.release_booking_hold(booking_id)
    second = service.release_booking_hold(booking_id)

    assert first.success and first.released
    assert second.success and not second.released
    assert _event(session_factory, chess_event.id).available_seats == 10
    assert _times_used(session_factory, discount_code) == 0


def test_release_never_exceeds_total_seats(session_factory, chess_event, make_booking):
    booking_id = make_booking(status=BookingStatus.CANCELLED, quantity=5)

    InventoryService(session_factory).release_booking_hold(booking_id)

    assert _event(session_factory, chess_event.id).available_seats == 10


def test_release_keeps_hold_of_live_booking(session_factory, chess_event, make_booking):
    booking_id = make_booking(status=BookingStatus.CONFIRMED)

    result = InventoryService(session_factory).release_booking_hold(booking_id)

    assert not result.success
    assert "hold kept" in result.errors[0]
    assert _event(session_factory, chess_event.id).available_seats == 8


def test_release_unknown_booking(session_factory):
    result = InventoryService(session_factory).release_booking_hold("missing")

    assert not result.success
    assert result.errors == ["Booking not found"]


def test_recalculate_counts_successful_bookings(session_factory, chess_event, make_booking):
    make_booking(status=BookingStatus.CONFIRMED, quantity=2)
    make_booking(status=BookingStatus.VERIFIED, quantity=1)
    make_booking(status=BookingStatus.PENDING, quantity=4)
    make_booking(status=BookingStatus.FAILED, quantity=3)

    count = InventoryService(session_factory).recalculate_participant_count(chess_event.id)

    assert count == 3
    assert _event(session_factory, chess_event.id).participant_count == 3


def test_sweep_cancels_only_stale_pending(session_factory, make_booking, fetch_booking):
    now = datetime.now(timezone.utc)
    stale = make_booking(created_at=now - timedelta(minutes=120))
    fresh = make_booking(created_at=now - timedelta(minutes=5))
    paid = make_booking(status=BookingStatus.CONFIRMED, created_at=now - timedelta(minutes=120))

    result = InventoryService(session_factory).sweep_stale_pending(older_than_minutes=60)

    assert result.cancelled == [stale]
    assert result.errors == []
    assert fetch_booking(stale).status is BookingStatus.CANCELLED
    assert fetch_booking(stale).hold_released_at is not None
    assert fetch_booking(fresh).status is BookingStatus.PENDING
    assert fetch_booking(paid).status is BookingStatus.CONFIRMED


def test_sweep_releases_hold_left_by_failed_expiry(
    session_factory, chess_event, make_booking, make_service, fetch_booking
):
    booking_id = make_booking(quantity=2, created_at=datetime.now(timezone.utc) - timedelta(hours=3))
    service = make_service(
        release_hold=lambda _booking_id: ReleaseResult(success=False, errors=["lock timeout"])
    )
    service.handle(
        "evt_expired_unreleased",
        "checkout.session.expired",
        stripe_object("checkout.session.expired", booking_id=booking_id),
    )
    assert fetch_booking(booking_id).hold_released_at is None

    result = InventoryService(session_factory).sweep_stale_pending(older_than_minutes=60)

    assert result.cancelled == []
    assert result.released == [booking_id]
    assert fetch_booking(booking_id).hold_released_at is not None
    assert _event(session_factory, chess_event.id).available_seats == 10


def test_sweep_skips_already_released_cancellations(session_factory, chess_event, make_booking):
    booking_id = make_booking(status=BookingStatus.CANCELLED)
    service = InventoryService(session_factory)
    service.release_booking_hold(booking_id)

    result = service.sweep_stale_pending(older_than_minutes=60)

    assert result.released == []
    assert _event(session_factory, chess_event.id).available_seats == 9
