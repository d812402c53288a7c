import os

# Must be set before src.infrastructure.db.session is imported.
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.application.inventory_service import InventoryService
from src.application.reconciliation_service import ReconciliationService
from src.application.settings import ReconciliationSettings
from src.application.side_effects import SideEffectDispatcher
from src.domain.exceptions import SideEffectError
from src.domain.notifications import NotificationIntent, SendResult
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Base, Booking, DiscountCode, Event, PaymentEvent
from tests.stripe_helpers import TEST_WEBHOOK_SECRET


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def chess_event(db):
    event = Event(
        title="Club Rapid Open",
        start_date=datetime(2026, 11, 14, 10, 0, tzinfo=timezone.utc),
        location="Community Hall",
        organizer_name="Club Secretary",
        organizer_email="secretary@chessclub.example",
        notify_organizer_on_booking=True,
        total_seats=10,
        available_seats=8,
        participant_count=0,
    )
    db.add(event)
    db.commit()
    return event


@pytest.fixture
def make_booking(db, chess_event):
    def _make(
        status: BookingStatus = BookingStatus.PENDING,
        quantity: int = 1,
        payment_reference: str | None = None,
        session_id: str | None = None,
        created_at: datetime | None = None,
        discount_code_id: str | None = None,
        event_id: str | None = None,
    ) -> str:
        booking = Booking(
            event_id=event_id or chess_event.id,
            booker_email="player@chessclub.example",
            booker_name="Demo Player",
            status=status,
            quantity=quantity,
            total_amount=1500 * quantity,
            payment_reference=payment_reference,
            session_id=session_id,
            discount_code_id=discount_code_id,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(booking)
        db.commit()
        return booking.id

    return _make


@pytest.fixture
def discount_code(db, chess_event):
    code = DiscountCode(event_id=chess_event.id, code="JUNIOR", max_uses=10, times_used=1)
    db.add(code)
    db.commit()
    return code.id


@pytest.fixture
def fetch_booking(session_factory):
    def _fetch(booking_id: str) -> Booking:
        with session_factory() as session:
            booking = session.execute(
                select(Booking).where(Booking.id == booking_id)
            ).unique().scalar_one()
            session.expunge(booking)
            return booking

    return _fetch


@pytest.fixture
def ledger_rows(session_factory):
    def _rows(provider_event_id: str | None = None) -> list[PaymentEvent]:
        with session_factory() as session:
            stmt = select(PaymentEvent)
            if provider_event_id is not None:
                stmt = stmt.where(PaymentEvent.provider_event_id == provider_event_id)
            rows = list(session.execute(stmt).scalars().all())
            session.expunge_all()
            return rows

    return _rows


class RecordingSender:
    """Notification sender double that records every intent it receives."""

    def __init__(self, fail_with: Exception | None = None):
        self.booker: list[NotificationIntent] = []
        self.organizer: list[NotificationIntent] = []
        self.fail_with = fail_with

    def send_booker_confirmation(self, intent: NotificationIntent) -> SendResult:
        if self.fail_with:
            raise self.fail_with
        self.booker.append(intent)
        return SendResult.sent(f"msg-{len(self.booker)}")

    def send_organizer_notification(self, intent: NotificationIntent) -> SendResult:
        if self.fail_with:
            raise self.fail_with
        self.organizer.append(intent)
        return SendResult.sent(f"org-{len(self.organizer)}")


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def failing_sender():
    return RecordingSender(fail_with=SideEffectError("SMTP relay unavailable"))


@pytest.fixture
def settings():
    return ReconciliationSettings(webhook_secret=TEST_WEBHOOK_SECRET)


@pytest.fixture
def make_service(session_factory, sender, settings):
    sessions = []

    def _make(
        sender=sender,
        settings: ReconciliationSettings = settings,
        **kwargs,
    ) -> ReconciliationService:
        session = session_factory()
        sessions.append(session)
        inventory = InventoryService(session_factory)
        dispatcher = SideEffectDispatcher(
            sender=sender,
            recalculate_participants=inventory.recalculate_participant_count,
        )
        kwargs.setdefault("release_hold", inventory.release_booking_hold)
        return ReconciliationService(
            db=session,
            dispatcher=dispatcher,
            settings=settings,
            **kwargs,
        )

    yield _make
    for session in sessions:
        session.close()


@pytest.fixture
def client(session_factory, settings):
    from src.api.routes.routes import get_db, get_session_factory, get_settings
    from src.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings

    # No context manager: startup would try to reach the configured database.
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
