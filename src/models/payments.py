from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class PaymentWebhookAck(BaseModel):
    received: Literal[True] = True
    event_id: str | None = Field(default=None, alias="eventId")
    error: str | None = None


class PaymentInitiationResponse(BaseModel):
    payment_request_id: str
    invoice_id: str
    transaction_reference: str
    amount: float
    currency: str
    status: Literal["pending"] = "pending"
    # Echoed into the processor's payment metadata so the webhook can correlate.
    metadata: dict[str, str]
    created_at: datetime | None = None
