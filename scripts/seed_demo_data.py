from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Base, Booking, DiscountCode, Event
from src.infrastructure.db.session import SessionLocal, engine


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    cet = timezone(timedelta(hours=1))
    now_cet = datetime.now(cet)
    target = now_cet + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_events(db) -> list[Event]:
    event_defs = [
        {
            "title": "Club Rapid Open",
            "start_date": _dt(days_from_now=10, hour=10, minute=0),
            "location": "Community Hall, Room 2",
            "organizer_name": "Club Secretary",
            "organizer_email": "secretary@chessclub.example",
            "notify_organizer_on_booking": True,
            "total_seats": 64,
            "discount_codes": [{"code": "JUNIOR", "max_uses": 20}],
        },
        {
            "title": "Thursday Blitz Night",
            "start_date": _dt(days_from_now=3, hour=19, minute=30),
            "location": "Clubhouse",
            "organizer_name": None,
            "organizer_email": None,
            "notify_organizer_on_booking": False,
            "total_seats": 32,
            "discount_codes": [],
        },
    ]

    events = []
    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            event = existing
            event.start_date = item["start_date"]
            event.location = item["location"]
            event.organizer_name = item["organizer_name"]
            event.organizer_email = item["organizer_email"]
            event.notify_organizer_on_booking = item["notify_organizer_on_booking"]
        else:
            event = Event(
                title=item["title"],
                start_date=item["start_date"],
                location=item["location"],
                organizer_name=item["organizer_name"],
                organizer_email=item["organizer_email"],
                notify_organizer_on_booking=item["notify_organizer_on_booking"],
                total_seats=item["total_seats"],
                available_seats=item["total_seats"],
                participant_count=0,
            )
            db.add(event)
            db.flush()

            for code in item["discount_codes"]:
                db.add(
                    DiscountCode(
                        event_id=event.id,
                        code=code["code"],
                        max_uses=code["max_uses"],
                        times_used=0,
                    )
                )
        events.append(event)
    return events


def seed_pending_booking(db, event: Event) -> Booking:
    """A pending booking as left behind by checkout, for webhook replays."""
    booking = Booking(
        event_id=event.id,
        booker_email="player@chessclub.example",
        booker_name="Demo Player",
        status=BookingStatus.PENDING,
        quantity=1,
        total_amount=1500,
        session_id="cs_test_demo_session",
    )
    event.available_seats -= booking.quantity
    db.add(booking)
    db.flush()
    return booking


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        events = seed_events(db)
        booking = seed_pending_booking(db, events[0])
        db.commit()
        print(
            "Seed complete: Club Rapid Open, Thursday Blitz Night, "
            f"pending booking {booking.id} (session cs_test_demo_session)."
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
