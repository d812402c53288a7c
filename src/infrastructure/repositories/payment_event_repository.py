# src/infrastructure/repositories/payment_event_repository.py

from enum import Enum

from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.infrastructure.db.models import PaymentEvent


class LedgerInsertResult(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"


class PaymentEventRepository:
    """
    Ledger of processed provider events.

    The unique constraint on provider_event_id decides concurrent
    duplicate deliveries: exactly one insert wins.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_processed(self, provider_event_id: str) -> bool:
        stmt = select(PaymentEvent.id).where(
            PaymentEvent.provider_event_id == provider_event_id
        )
        return self.db.execute(stmt).first() is not None

    def insert_if_absent(
        self,
        provider_event_id: str,
        booking_id: str,
        event_type: str,
    ) -> LedgerInsertResult:
        values = {
            "provider_event_id": provider_event_id,
            "booking_id": booking_id,
            "event_type": event_type,
        }
        dialect = self.db.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            module = postgresql if dialect == "postgresql" else sqlite
            stmt = (
                module.insert(PaymentEvent)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["provider_event_id"])
            )
            result = self.db.execute(stmt)
            if result.rowcount == 1:
                return LedgerInsertResult.INSERTED
            return LedgerInsertResult.ALREADY_PRESENT

        try:
            self.db.execute(insert(PaymentEvent).values(**values))
        except IntegrityError:
            # The transaction is unusable now; the caller rolls it back.
            return LedgerInsertResult.ALREADY_PRESENT
        return LedgerInsertResult.INSERTED

    def record_outcome(
        self,
        provider_event_id: str,
        outcome: str,
        previous_status: str | None,
        new_status: str | None,
    ) -> None:
        stmt = (
            update(PaymentEvent)
            .where(PaymentEvent.provider_event_id == provider_event_id)
            .values(
                outcome=outcome,
                previous_status=previous_status,
                new_status=new_status,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def list_for_booking(self, booking_id: str) -> list[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.booking_id == booking_id)
            .order_by(PaymentEvent.processed_at, PaymentEvent.id)
        )
        return list(self.db.execute(stmt).scalars().all())
