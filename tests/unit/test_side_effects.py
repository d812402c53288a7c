from datetime import datetime, timezone

import pytest

from src.application.side_effects import SideEffectDispatcher
from src.domain.notifications import BookingSnapshot, NotificationKind
from src.domain.state_machine import BookingStatus


def _snapshot(**overrides):
    values = dict(
        booking_id="b-1",
        short_code="ABCD1234",
        event_id="e-1",
        status="confirmed",
        quantity=2,
        total_amount=3000,
        booker_email="player@chessclub.example",
        booker_name="Demo Player",
        payment_reference="pi_1",
        created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        event_title="Club Rapid Open",
        event_start_date=datetime(2026, 11, 14, 10, tzinfo=timezone.utc),
        event_location="Community Hall",
        organizer_email="secretary@chessclub.example",
        organizer_name=None,
        notify_organizer_on_booking=True,
    )
    values.update(overrides)
    return BookingSnapshot(**values)


def test_first_success_plans_booker_and_organizer(sender):
    intents = SideEffectDispatcher(sender).plan(
        _snapshot(), BookingStatus.PENDING, BookingStatus.CONFIRMED, first_success=True
    )

    assert [i.kind for i in intents] == [
        NotificationKind.BOOKER_CONFIRMATION,
        NotificationKind.ORGANIZER_NOTIFICATION,
    ]
    payload = intents[0].payload
    assert payload["status"] == "confirmed"
    assert payload["event_title"] == "Club Rapid Open"
    assert payload["organizer_name"] == "secretary@chessclub.example"


def test_whitelisted_booking_gets_whitelisted_variant(sender):
    intents = SideEffectDispatcher(sender).plan(
        _snapshot(), BookingStatus.WHITELISTED, BookingStatus.VERIFIED, first_success=True
    )

    assert intents[0].kind is NotificationKind.WHITELISTED_CONFIRMATION


def test_upgrade_to_verified_plans_nothing(sender):
    intents = SideEffectDispatcher(sender).plan(
        _snapshot(), BookingStatus.CONFIRMED, BookingStatus.VERIFIED, first_success=False
    )

    assert intents == []


@pytest.mark.parametrize(
    "new_status",
    [BookingStatus.FAILED, BookingStatus.DISPUTED, BookingStatus.CANCELLED],
)
def test_unsuccessful_statuses_plan_nothing(sender, new_status):
    intents = SideEffectDispatcher(sender).plan(
        _snapshot(), BookingStatus.PENDING, new_status, first_success=True
    )

    assert intents == []


def test_organizer_skipped_without_opt_in_or_email(sender):
    dispatcher = SideEffectDispatcher(sender)

    opted_out = dispatcher.plan(
        _snapshot(notify_organizer_on_booking=False),
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        first_success=True,
    )
    no_email = dispatcher.plan(
        _snapshot(organizer_email=None),
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        first_success=True,
    )

    assert [i.kind for i in opted_out] == [NotificationKind.BOOKER_CONFIRMATION]
    assert [i.kind for i in no_email] == [NotificationKind.BOOKER_CONFIRMATION]


def test_dispatch_routes_intents_and_recalculates(sender):
    recalculated = []
    dispatcher = SideEffectDispatcher(sender, recalculate_participants=recalculated.append)

    results = dispatcher.dispatch(
        _snapshot(),
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        True,
        "checkout.session.completed",
        "evt_1",
    )

    assert recalculated == ["e-1"]
    assert len(sender.booker) == 1
    assert len(sender.organizer) == 1
    assert all(result.success for _, result in results)


def test_dispatch_swallows_sender_failures(failing_sender, caplog):
    dispatcher = SideEffectDispatcher(failing_sender)

    results = dispatcher.dispatch(
        _snapshot(),
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        True,
        "checkout.session.completed",
        "evt_1",
    )

    assert [result.success for _, result in results] == [False, False]
    assert "SMTP relay unavailable" in results[0][1].error
    assert "Notification send raised" in caplog.text


def test_dispatch_survives_recalculation_failure(sender):
    def broken(event_id):
        raise RuntimeError("counter table locked")

    results = SideEffectDispatcher(sender, recalculate_participants=broken).dispatch(
        _snapshot(),
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        True,
        "checkout.session.completed",
        "evt_1",
    )

    assert len(results) == 2
    assert len(sender.booker) == 1
