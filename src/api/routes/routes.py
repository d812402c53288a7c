from datetime import datetime, timezone
from functools import lru_cache
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Header, HTTPException, status, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError

from src.infrastructure.db.session import SessionLocal
from src.application.inventory_service import InventoryService
from src.application.reconciliation_service import ReconciliationService
from src.application.settings import ReconciliationSettings
from src.application.side_effects import SideEffectDispatcher
from src.api.schemas.schemas import (
    CleanupResponse,
    OutboxEventResponse,
    PaymentEventResponse,
    WebhookAck,
)
from src.api.security.stripe_verifier import StripeSignatureVerifier
from src.domain.exceptions import (
    PersistenceError,
    WebhookAuthenticationError,
)
from src.infrastructure.db.models import Booking, OutboxEvent
from src.infrastructure.notifications.outbox_sender import OutboxNotificationSender
from src.infrastructure.repositories.payment_event_repository import PaymentEventRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


@lru_cache
def get_settings() -> ReconciliationSettings:
    return ReconciliationSettings.from_env()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


def _require_bearer(expected: str | None, authorization: str | None) -> None:
    if not expected or authorization != f"Bearer {expected}":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


def _reconciliation_service(
    db: Session,
    session_factory: Callable[[], Session],
    settings: ReconciliationSettings,
) -> ReconciliationService:
    inventory = InventoryService(session_factory)
    dispatcher = SideEffectDispatcher(
        sender=OutboxNotificationSender(session_factory),
        recalculate_participants=inventory.recalculate_participant_count,
    )
    return ReconciliationService(
        db=db,
        dispatcher=dispatcher,
        release_hold=inventory.release_booking_hold,
        settings=settings,
    )


@router.get("/health")
def health():
    return {"message": "Payment reconciliation engine is running"}


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: ReconciliationSettings = Depends(get_settings),
):
    # Signature is checked on the raw bytes, before any parsing.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    verifier = StripeSignatureVerifier(
        settings.webhook_secret,
        settings.webhook_tolerance_seconds,
    )
    try:
        event = verifier.verify(payload, signature)
    except WebhookAuthenticationError as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from exc

    logger.info(
        "Webhook received. event_id=%s event_type=%s at=%s",
        event.id,
        event.type,
        _utc_now_iso(),
    )

    service = _reconciliation_service(db, session_factory, settings)
    try:
        result = await run_in_threadpool(
            service.handle,
            event.id,
            event.type,
            event.data.object,
        )
    except PersistenceError as exc:
        cause = exc.__cause__
        logger.error(
            "Webhook processing failed, asking provider to retry. event_id=%s degraded=%s",
            event.id,
            _is_db_degraded(cause) if isinstance(cause, Exception) else False,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAck(
        outcome=result.outcome.value,
        booking_id=result.booking_id,
        status=result.new_status.value if result.new_status else None,
    )


@router.get(
    "/admin/bookings/{booking_id}/payment-events",
    response_model=list[PaymentEventResponse],
)
def list_booking_payment_events(
    booking_id: str,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    settings: ReconciliationSettings = Depends(get_settings),
):
    _require_bearer(settings.admin_api_key, authorization)

    booking = db.execute(select(Booking.id).where(Booking.id == booking_id)).scalar_one_or_none()
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found",
        )

    entries = PaymentEventRepository(db).list_for_booking(booking_id)
    return [
        PaymentEventResponse(
            id=item.id,
            provider_event_id=item.provider_event_id,
            booking_id=item.booking_id,
            event_type=item.event_type,
            outcome=item.outcome,
            previous_status=item.previous_status,
            new_status=item.new_status,
            processed_at=item.processed_at.isoformat(),
        )
        for item in entries
    ]


@router.post("/cron/cleanup-pending-bookings", response_model=CleanupResponse)
def cleanup_pending_bookings(
    authorization: str | None = Header(default=None),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: ReconciliationSettings = Depends(get_settings),
):
    _require_bearer(settings.cron_secret_key, authorization)

    result = InventoryService(session_factory).sweep_stale_pending(
        older_than_minutes=settings.stale_pending_minutes,
    )
    return CleanupResponse(
        success=not result.errors,
        cancelled_count=len(result.cancelled),
        cancelled=result.cancelled,
        released=result.released,
        errors=result.errors,
    )


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == status_filter)
        .order_by(OutboxEvent.created_at)
        .limit(safe_limit)
    )
    events = list(db.execute(stmt).scalars().all())
    return [
        OutboxEventResponse(
            id=item.id,
            aggregate_type=item.aggregate_type,
            aggregate_id=item.aggregate_id,
            event_type=item.event_type,
            status=item.status,
            attempts=item.attempts,
            created_at=item.created_at.isoformat(),
        )
        for item in events
    ]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = db.execute(select(OutboxEvent).where(OutboxEvent.id == event_id)).scalar_one_or_none()
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    item.status = "PUBLISHED"
    item.published_at = datetime.now(timezone.utc)
    item.attempts += 1
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )
