import logging
import os
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from src.api.routes.routes import get_settings, router
from src.infrastructure.db.session import engine
from src.infrastructure.db.models import Base

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Chess Club Payment Reconciliation")

app.include_router(router)
logger = logging.getLogger(__name__)


def _wait_for_db() -> None:
    # No webhook is accepted before events can be persisted.
    max_retries = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    retry_delay_seconds = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable. backend=%s", engine.url.get_backend_name())
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


def _log_reconciliation_settings() -> None:
    settings = get_settings()
    if not settings.webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set; every webhook will be rejected.")
    if settings.enable_recent_pending_fallback:
        logger.warning(
            "Recent-pending correlation fallback enabled. window_minutes=%s",
            settings.recent_pending_window_minutes,
        )
    if not settings.cron_secret_key:
        logger.warning("CRON_SECRET_KEY is not set; the pending cleanup endpoint is closed.")


@app.on_event("startup")
def on_startup() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
    _log_reconciliation_settings()
