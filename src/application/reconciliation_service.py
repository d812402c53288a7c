import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.application.correlator import BookingCorrelator
from src.application.inventory_service import ReleaseResult
from src.application.settings import ReconciliationSettings
from src.application.side_effects import SideEffectDispatcher
from src.domain.events import PaymentNotification
from src.domain.exceptions import (
    CorrelationMiss,
    PersistenceError,
    ReferenceConflictError,
    TransitionConflict,
)
from src.domain.notifications import BookingSnapshot
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentEventType,
    SUCCESSFUL_STATUSES,
)
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_event_repository import (
    LedgerInsertResult,
    PaymentEventRepository,
)


_CAPTURE_EVENTS = frozenset(
    {PaymentEventType.PAYMENT_INTENT_SUCCEEDED, PaymentEventType.CHARGE_SUCCEEDED}
)


class ReconciliationOutcome(str, Enum):
    TRANSITIONED = "transitioned"
    NOOP = "noop"
    CONFLICT = "conflict"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    event_id: str
    event_type: str
    booking_id: str | None = None
    previous_status: BookingStatus | None = None
    new_status: BookingStatus | None = None
    notifications: list = field(default_factory=list)


@dataclass
class _Applied:
    result: ReconciliationResult
    snapshot: BookingSnapshot | None = None
    first_success: bool = False


class ReconciliationService:
    """
    Folds one authenticated provider event into booking state.

    Ledger insert, status compare-and-swap and reference binding share a
    single transaction. Side effects run only after it has committed and
    never affect the acknowledgement.
    """

    MAX_DECISION_ATTEMPTS = 3

    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher,
        release_hold: Callable[[str], ReleaseResult],
        settings: ReconciliationSettings | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.release_hold = release_hold
        self.settings = settings or ReconciliationSettings()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self.booking_repository = BookingRepository(db)
        self.ledger = PaymentEventRepository(db)
        self.correlator = BookingCorrelator(
            self.booking_repository,
            enable_recent_pending_fallback=self.settings.enable_recent_pending_fallback,
            recent_pending_window_minutes=self.settings.recent_pending_window_minutes,
            logger=self.logger,
        )

    def handle(
        self,
        event_id: str,
        event_type: str,
        obj: Mapping[str, Any],
    ) -> ReconciliationResult:
        parsed_type = PaymentEventType.parse(event_type)
        if parsed_type is None:
            self.logger.info(
                "Unhandled webhook event type acknowledged. event_id=%s event_type=%s",
                event_id,
                event_type,
            )
            return ReconciliationResult(ReconciliationOutcome.IGNORED, event_id, event_type)

        self._maybe_delay(parsed_type, event_id)
        notification = PaymentNotification.from_provider_event(event_id, parsed_type, obj)

        try:
            applied = self._apply(notification)
        except SQLAlchemyError as exc:
            self._rollback_quietly()
            self.logger.error(
                "Persisting webhook event failed; provider will redeliver. "
                "event_id=%s event_type=%s error=%s",
                event_id,
                event_type,
                exc,
            )
            raise PersistenceError(f"Could not persist event {event_id}") from exc

        result = applied.result
        if result.outcome is ReconciliationOutcome.TRANSITIONED:
            notifications = self._after_commit(notification, applied)
            result = ReconciliationResult(
                outcome=result.outcome,
                event_id=result.event_id,
                event_type=result.event_type,
                booking_id=result.booking_id,
                previous_status=result.previous_status,
                new_status=result.new_status,
                notifications=notifications,
            )
        return result

    # -----------------------------
    # Transactional part
    # -----------------------------
    def _apply(self, notification: PaymentNotification) -> _Applied:
        event_id = notification.event_id
        event_type = notification.event_type.value

        if self.ledger.has_processed(event_id):
            self.db.rollback()
            self.logger.info("Duplicate webhook event skipped. event_id=%s", event_id)
            return _Applied(ReconciliationResult(ReconciliationOutcome.DUPLICATE, event_id, event_type))

        correlation = self.correlator.resolve(notification)
        if correlation is None:
            self.db.rollback()
            miss = CorrelationMiss(event_id, event_type)
            self.logger.warning(
                "%s. booking_id=%s payment_reference=%s session_id=%s",
                miss,
                notification.booking_id,
                notification.payment_reference,
                notification.session_id,
            )
            return _Applied(ReconciliationResult(ReconciliationOutcome.UNRESOLVED, event_id, event_type))

        booking_id = correlation.booking.id
        inserted = self.ledger.insert_if_absent(event_id, booking_id, event_type)
        if inserted is LedgerInsertResult.ALREADY_PRESENT:
            self.db.rollback()
            self.logger.info(
                "Concurrent delivery already recorded event. event_id=%s booking_id=%s",
                event_id,
                booking_id,
            )
            return _Applied(
                ReconciliationResult(ReconciliationOutcome.DUPLICATE, event_id, event_type, booking_id)
            )

        try:
            applied = self._decide_and_write(notification, booking_id)
        except CorrelationMiss as miss:
            # Deleted between correlation and decision.
            self.db.rollback()
            self.logger.warning("%s. booking_id=%s vanished", miss, booking_id)
            return _Applied(ReconciliationResult(ReconciliationOutcome.UNRESOLVED, event_id, event_type))

        result = applied.result
        self.ledger.record_outcome(
            event_id,
            result.outcome.value,
            result.previous_status.value if result.previous_status else None,
            result.new_status.value if result.new_status else None,
        )
        self.db.commit()

        self.logger.info(
            "Webhook event reconciled. event_id=%s event_type=%s booking_id=%s "
            "outcome=%s from=%s to=%s tier=%s",
            event_id,
            event_type,
            booking_id,
            result.outcome.value,
            result.previous_status.value if result.previous_status else None,
            result.new_status.value if result.new_status else None,
            correlation.tier.value,
        )
        return applied

    def _decide_and_write(
        self,
        notification: PaymentNotification,
        booking_id: str,
    ) -> _Applied:
        event_id = notification.event_id
        event_type = notification.event_type.value
        conflicted = False

        for _ in range(self.MAX_DECISION_ATTEMPTS):
            booking = self.booking_repository.get_by_id(booking_id, fresh=True)
            if booking is None:
                raise CorrelationMiss(event_id, event_type)
            current = booking.status
            decision = BookingStateMachine.next_state(
                current,
                notification.event_type,
                notification.data,
            )
            reference = self._bindable_reference(booking, notification)

            if not decision.transitioned:
                if (
                    notification.event_type in _CAPTURE_EVENTS
                    and BookingStateMachine.is_terminal(current)
                ):
                    self.logger.warning(
                        "Payment captured on closed booking; refund may be needed. "
                        "booking_id=%s status=%s payment_reference=%s event_id=%s",
                        booking_id,
                        current.value,
                        notification.payment_reference or booking.payment_reference,
                        event_id,
                    )
                if reference:
                    self._bind_on_noop(booking, reference, event_id)
                outcome = (
                    ReconciliationOutcome.CONFLICT if conflicted else ReconciliationOutcome.NOOP
                )
                self.logger.debug(
                    "No-op transition. event_id=%s booking_id=%s status=%s",
                    event_id,
                    booking_id,
                    current.value,
                )
                return _Applied(
                    ReconciliationResult(outcome, event_id, event_type, booking_id, current, current)
                )

            first_success = (
                decision.new_status in SUCCESSFUL_STATUSES
                and booking.first_confirmed_at is None
            )
            moved = self.booking_repository.conditional_update_status(
                booking_id,
                expected_status=current,
                new_status=decision.new_status,
                new_reference=reference,
            )
            if moved:
                snapshot = _snapshot(
                    booking,
                    decision.new_status,
                    reference or booking.payment_reference,
                )
                return _Applied(
                    ReconciliationResult(
                        ReconciliationOutcome.TRANSITIONED,
                        event_id,
                        event_type,
                        booking_id,
                        current,
                        decision.new_status,
                    ),
                    snapshot=snapshot,
                    first_success=first_success,
                )

            conflict = TransitionConflict(booking_id, current.value, decision.new_status.value)
            self.logger.info("%s. event_id=%s; re-reading booking", conflict, event_id)
            conflicted = True

        booking = self.booking_repository.get_by_id(booking_id, fresh=True)
        if booking is None:
            raise CorrelationMiss(event_id, event_type)
        return _Applied(
            ReconciliationResult(
                ReconciliationOutcome.CONFLICT,
                event_id,
                event_type,
                booking_id,
                booking.status,
                booking.status,
            )
        )

    def _bindable_reference(
        self,
        booking: Booking,
        notification: PaymentNotification,
    ) -> str | None:
        reference = notification.payment_reference
        if not reference or booking.payment_reference == reference:
            return None
        if booking.payment_reference:
            self.logger.warning(
                "%s. event_id=%s",
                ReferenceConflictError(booking.id, booking.payment_reference, reference),
                notification.event_id,
            )
            return None
        owner = self.booking_repository.reference_owner(reference)
        if owner is not None and owner != booking.id:
            self.logger.warning(
                "Payment reference already bound to another booking. "
                "booking_id=%s owner_booking_id=%s payment_reference=%s event_id=%s",
                booking.id,
                owner,
                reference,
                notification.event_id,
            )
            return None
        return reference

    def _bind_on_noop(self, booking: Booking, reference: str, event_id: str) -> None:
        try:
            self.booking_repository.bind_reference(booking.id, reference)
        except ReferenceConflictError as exc:
            self.logger.warning("%s. event_id=%s", exc, event_id)

    # -----------------------------
    # After commit
    # -----------------------------
    def _after_commit(
        self,
        notification: PaymentNotification,
        applied: _Applied,
    ) -> list:
        result = applied.result
        notifications: list = []
        if (
            BookingStateMachine.triggers_hold_release(notification.event_type)
            and result.new_status is BookingStatus.CANCELLED
        ):
            # The pending sweep retries holds left unreleased here.
            try:
                release = self.release_hold(result.booking_id)
                if not release.success:
                    self.logger.error(
                        "Hold release after expiry failed. booking_id=%s event_id=%s errors=%s",
                        result.booking_id,
                        result.event_id,
                        release.errors,
                    )
            except Exception:
                self.logger.exception(
                    "Hold release after expiry raised. booking_id=%s event_id=%s",
                    result.booking_id,
                    result.event_id,
                )

        try:
            notifications = self.dispatcher.dispatch(
                applied.snapshot,
                result.previous_status,
                result.new_status,
                applied.first_success,
                result.event_type,
                result.event_id,
            )
        except Exception:
            self.logger.exception(
                "Side effects failed after committed transition. booking_id=%s "
                "event_id=%s event_type=%s",
                result.booking_id,
                result.event_id,
                result.event_type,
            )
        return notifications

    def _maybe_delay(self, event_type: PaymentEventType, event_id: str) -> None:
        delay = self.settings.payment_intent_succeeded_delay_seconds
        if event_type is not PaymentEventType.PAYMENT_INTENT_SUCCEEDED or delay <= 0:
            return
        # Heuristic only; ordering is made irrelevant by the ledger
        # and the monotonic state machine.
        self.logger.info(
            "Delaying payment_intent.succeeded. event_id=%s seconds=%s",
            event_id,
            delay,
        )
        self._sleep(delay)

    def _rollback_quietly(self) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            self.logger.exception("Rollback after persistence failure also failed")


def _snapshot(
    booking: Booking,
    new_status: BookingStatus,
    payment_reference: str | None,
) -> BookingSnapshot:
    event = booking.event
    return BookingSnapshot(
        booking_id=booking.id,
        short_code=booking.short_code,
        event_id=booking.event_id,
        status=new_status.value,
        quantity=booking.quantity,
        total_amount=booking.total_amount,
        booker_email=booking.booker_email,
        booker_name=booking.booker_name,
        payment_reference=payment_reference,
        created_at=booking.created_at,
        event_title=event.title if event else None,
        event_start_date=event.start_date if event else None,
        event_location=event.location if event else None,
        organizer_email=event.organizer_email if event else None,
        organizer_name=event.organizer_name if event else None,
        notify_organizer_on_booking=bool(event.notify_organizer_on_booking) if event else False,
    )
