from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


class Channel(str, Enum):
    PAYMENT_WEBHOOK = "payment_webhook"
    ORDER_LINK = "order_link"
    EMAIL_OPEN = "email_open"


PAYMENT_SUCCESS_KINDS = frozenset({"payment.authorized", "payment.settled", "payment.captured"})
PAYMENT_FAILURE_KINDS = frozenset({"payment.failed", "payment.refused"})
REFUND_KINDS = frozenset({"refund.requested", "refund.completed"})
DISPUTE_KINDS = frozenset({"chargeback.received", "dispute.opened"})

# Kinds that may legitimately repeat for one transaction with distinct event ids.
_PER_EVENT_KINDS = PAYMENT_FAILURE_KINDS | REFUND_KINDS | DISPUTE_KINDS


class MalformedEventError(ValueError):
    """Raised when an inbound payload cannot be turned into an event."""


@dataclass(frozen=True)
class ExternalEvent:
    """Channel-agnostic envelope for anything arriving from outside."""
    channel: Channel
    kind: str
    natural_key: str
    event_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class PaymentEvent:
    event_type: str
    event_id: str | None
    event_timestamp: str | None
    transaction_reference: str | None
    amount_minor: int | None
    reason: str | None
    user_id: str | None
    invoice_id: str | None
    payload: dict[str, Any]

    @property
    def amount(self) -> float | None:
        if self.amount_minor is None:
            return None
        return round(self.amount_minor / 100, 2)


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def _nested(payload: dict[str, Any], *path: str) -> Any:
    current: Any = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_amount_minor(payload: dict[str, Any]) -> int | None:
    raw = _nested(payload, "instruction", "value", "amount")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def parse_payment_event(payload: Any) -> PaymentEvent:
    if not isinstance(payload, dict):
        raise MalformedEventError("payload_not_object")
    event_type = _optional_str(payload.get("eventType") or payload.get("type"))
    if not event_type:
        raise MalformedEventError("missing_event_type")

    invoice_id = _optional_str(_nested(payload, "metadata", "invoiceId"))
    if invoice_id and not is_uuid(invoice_id):
        invoice_id = None
    user_id = _optional_str(_nested(payload, "metadata", "userId"))
    if user_id and not is_uuid(user_id):
        user_id = None

    return PaymentEvent(
        event_type=event_type,
        event_id=_optional_str(payload.get("eventId") or payload.get("id")),
        event_timestamp=_optional_str(payload.get("eventTimestamp")),
        transaction_reference=_optional_str(payload.get("transactionReference")),
        amount_minor=_extract_amount_minor(payload),
        reason=_optional_str(_nested(payload, "outcome", "reason")),
        user_id=user_id,
        invoice_id=invoice_id,
        payload=payload,
    )


def payment_natural_key(event: PaymentEvent, raw_body: bytes) -> str:
    reference = event.transaction_reference
    if reference:
        if event.event_type in _PER_EVENT_KINDS and event.event_id:
            return f"payment:{reference}:{event.event_type}:{event.event_id}"
        return f"payment:{reference}:{event.event_type}"
    if event.event_id:
        return f"payment:event:{event.event_type}:{event.event_id}"
    return f"payment:body:{hashlib.sha256(raw_body).hexdigest()}"


def payment_external_event(event: PaymentEvent, raw_body: bytes) -> ExternalEvent:
    return ExternalEvent(
        channel=Channel.PAYMENT_WEBHOOK,
        kind=event.event_type,
        natural_key=payment_natural_key(event, raw_body),
        event_id=event.event_id,
        payload=event.payload,
    )


def order_link_natural_key(order_number: str, email: str) -> str:
    return f"order_link:{order_number.strip()}:{email.strip().casefold()}"


def email_open_natural_key(tracking_id: str) -> str:
    return f"email_open:{tracking_id}"
