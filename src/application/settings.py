import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ReconciliationSettings:
    webhook_secret: str | None = None
    webhook_tolerance_seconds: int = 300
    enable_recent_pending_fallback: bool = False
    recent_pending_window_minutes: int = 30
    # Lowers the odds that payment_intent.succeeded overtakes
    # checkout.session.completed. Not relied on for correctness.
    payment_intent_succeeded_delay_seconds: float = 0.0
    stale_pending_minutes: int = 60
    cron_secret_key: str | None = None
    admin_api_key: str | None = None

    @classmethod
    def from_env(cls) -> "ReconciliationSettings":
        return cls(
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300")),
            enable_recent_pending_fallback=_env_flag("ENABLE_RECENT_PENDING_FALLBACK"),
            recent_pending_window_minutes=int(os.getenv("RECENT_PENDING_WINDOW_MINUTES", "30")),
            payment_intent_succeeded_delay_seconds=float(
                os.getenv("PAYMENT_INTENT_SUCCEEDED_DELAY_SECONDS", "0")
            ),
            stale_pending_minutes=int(os.getenv("STALE_PENDING_MINUTES", "60")),
            cron_secret_key=os.getenv("CRON_SECRET_KEY"),
            admin_api_key=os.getenv("ADMIN_API_KEY"),
        )
