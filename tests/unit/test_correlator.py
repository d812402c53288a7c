from datetime import datetime, timedelta, timezone

from src.application.correlator import BookingCorrelator, CorrelationTier
from src.domain.events import PaymentNotification
from src.domain.state_machine import BookingStatus, PaymentEventType
from src.infrastructure.repositories.booking_repository import BookingRepository


def _notification(event_type=PaymentEventType.PAYMENT_INTENT_SUCCEEDED, **kwargs):
    return PaymentNotification(event_id="evt_corr", event_type=event_type, **kwargs)


def _correlator(db, **kwargs):
    return BookingCorrelator(BookingRepository(db), **kwargs)


def _minutes_ago(minutes):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def test_metadata_id_wins_over_reference(db, make_booking):
    asserted = make_booking()
    make_booking(payment_reference="pi_other")

    correlation = _correlator(db).resolve(
        _notification(booking_id=asserted, payment_reference="pi_other")
    )

    assert correlation.booking.id == asserted
    assert correlation.tier is CorrelationTier.METADATA_ID
    assert not correlation.degraded


def test_unknown_metadata_id_falls_through_to_reference(db, make_booking):
    bound = make_booking(payment_reference="pi_bound")

    correlation = _correlator(db).resolve(
        _notification(booking_id="no-such-booking", payment_reference="pi_bound")
    )

    assert correlation.booking.id == bound
    assert correlation.tier is CorrelationTier.PAYMENT_REFERENCE


def test_session_match_binds_reference(db, make_booking, fetch_booking):
    booking_id = make_booking(session_id="cs_bind")

    correlation = _correlator(db).resolve(
        _notification(
            event_type=PaymentEventType.CHECKOUT_SESSION_COMPLETED,
            session_id="cs_bind",
            payment_reference="pi_bind",
        )
    )
    db.commit()

    assert correlation.tier is CorrelationTier.SESSION_ID
    assert fetch_booking(booking_id).payment_reference == "pi_bind"


def test_session_match_keeps_reference_owned_elsewhere(db, make_booking, fetch_booking):
    make_booking(payment_reference="pi_taken")
    booking_id = make_booking(session_id="cs_conflict")

    correlation = _correlator(db).resolve(
        _notification(
            event_type=PaymentEventType.CHECKOUT_SESSION_COMPLETED,
            session_id="cs_conflict",
            payment_reference="pi_taken",
        )
    )
    db.commit()

    # the reference tier resolves first and returns the owner
    assert correlation.tier is CorrelationTier.PAYMENT_REFERENCE
    assert fetch_booking(booking_id).payment_reference is None


def test_no_identifiers_resolves_nothing_when_heuristic_disabled(db, make_booking):
    make_booking(created_at=_minutes_ago(1))

    assert _correlator(db).resolve(_notification(payment_reference="pi_unknown")) is None


def test_heuristic_picks_single_recent_pending(db, make_booking):
    booking_id = make_booking(created_at=_minutes_ago(5))

    correlation = _correlator(db, enable_recent_pending_fallback=True).resolve(
        _notification(payment_reference="pi_unknown")
    )

    assert correlation.booking.id == booking_id
    assert correlation.tier is CorrelationTier.RECENT_PENDING
    assert correlation.degraded


def test_heuristic_refuses_to_guess_between_candidates(db, make_booking):
    make_booking(created_at=_minutes_ago(5))
    make_booking(created_at=_minutes_ago(2))

    correlator = _correlator(db, enable_recent_pending_fallback=True)

    assert correlator.resolve(_notification(payment_reference="pi_unknown")) is None


def test_heuristic_ignores_old_bound_and_settled_bookings(db, make_booking):
    make_booking(created_at=_minutes_ago(90))
    make_booking(created_at=_minutes_ago(3), payment_reference="pi_somebody")
    make_booking(created_at=_minutes_ago(3), status=BookingStatus.CONFIRMED)

    correlator = _correlator(
        db,
        enable_recent_pending_fallback=True,
        recent_pending_window_minutes=30,
    )

    assert correlator.resolve(_notification(payment_reference="pi_unknown")) is None
