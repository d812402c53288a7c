from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    object: dict[str, Any] = Field(default_factory=dict)


class StripeWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    livemode: bool = False
    data: StripeEventData = Field(default_factory=StripeEventData)


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Literal[
        "transitioned",
        "noop",
        "conflict",
        "duplicate",
        "unresolved",
        "ignored",
    ]
    booking_id: str | None = None
    status: str | None = None


class PaymentEventResponse(BaseModel):
    id: str
    provider_event_id: str
    booking_id: str
    event_type: str
    outcome: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    processed_at: str


class CleanupResponse(BaseModel):
    success: bool
    cancelled_count: int
    cancelled: list[str]
    released: list[str] = []
    errors: list[str]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
