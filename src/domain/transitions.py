"""Pure transition planning for every record the reconciler touches.

Each ``plan_*`` function takes a snapshot of the current record(s) plus the
inbound event and returns a :class:`Transition`: the outcome and the ordered
effects that the service layer must apply. Nothing here performs I/O, so the
same inputs always yield the same plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from src.domain.events import (
    DISPUTE_KINDS,
    PAYMENT_FAILURE_KINDS,
    PAYMENT_SUCCESS_KINDS,
    REFUND_KINDS,
    PaymentEvent,
)


INVOICE_UNPAID = "unpaid"
INVOICE_PAID = "paid"
INVOICE_REFUNDED = "refunded"

REQUEST_PENDING = "pending"
REQUEST_COMPLETED = "completed"
REQUEST_FAILED = "failed"


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    status: str
    user_id: str | None = None
    total: float | None = None
    currency: str | None = None


@dataclass(frozen=True)
class PaymentRequestSnapshot:
    id: str
    status: str
    invoice_id: str | None = None
    user_id: str | None = None
    amount: float | None = None


@dataclass(frozen=True)
class PaymentTarget:
    invoice: InvoiceSnapshot | None = None
    payment_request: PaymentRequestSnapshot | None = None

    @property
    def owner_id(self) -> str | None:
        if self.invoice and self.invoice.user_id:
            return self.invoice.user_id
        if self.payment_request:
            return self.payment_request.user_id
        return None

    @property
    def is_empty(self) -> bool:
        return self.invoice is None and self.payment_request is None


@dataclass(frozen=True)
class GuestOrderSnapshot:
    id: str
    order_number: str
    email: str
    user_id: str | None = None
    linked_at: str | None = None


# Effects


@dataclass(frozen=True)
class MarkInvoicePaid:
    invoice_id: str


@dataclass(frozen=True)
class MarkInvoiceRefunded:
    invoice_id: str


@dataclass(frozen=True)
class CompletePaymentRequest:
    request_id: str


@dataclass(frozen=True)
class FailPaymentRequest:
    request_id: str


@dataclass(frozen=True)
class RecordPaymentRequestEvent:
    request_id: str
    event_type: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CreateReceipt:
    invoice_id: str
    user_id: str | None
    amount: float
    reference: str
    # Only issue if this run's MarkInvoicePaid actually moved the invoice.
    requires_settlement: bool = True


@dataclass(frozen=True)
class CreatePaymentAttempt:
    invoice_id: str | None
    user_id: str | None
    amount: float
    provider: str
    provider_ref: str
    reason: str


@dataclass(frozen=True)
class CreateCreditNote:
    invoice_id: str
    user_id: str | None
    amount: float
    provider_ref: str
    reason: str


@dataclass(frozen=True)
class RecordUrgentAudit:
    entity_id: str | None
    event_type: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class CreatePaymentRequest:
    invoice_id: str
    user_id: str
    amount: float
    currency: str
    provider_reference: str


@dataclass(frozen=True)
class LinkGuestOrder:
    order_id: str
    user_id: str
    linked_at: str


@dataclass(frozen=True)
class MarkRecipientOpened:
    table: str
    recipient_id: str
    opened_at: str


@dataclass(frozen=True)
class IncrementOpenCount:
    table: str
    recipient_id: str


@dataclass(frozen=True)
class IncrementCampaignOpens:
    campaign_id: str


Effect = (
    MarkInvoicePaid
    | MarkInvoiceRefunded
    | CompletePaymentRequest
    | FailPaymentRequest
    | RecordPaymentRequestEvent
    | CreateReceipt
    | CreatePaymentAttempt
    | CreateCreditNote
    | RecordUrgentAudit
    | CreatePaymentRequest
    | LinkGuestOrder
    | MarkRecipientOpened
    | IncrementOpenCount
    | IncrementCampaignOpens
)


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    effects: tuple[Effect, ...] = ()
    reason: str | None = None
    next_status: str | None = None


def _per_event_ref(event: PaymentEvent) -> str:
    if event.event_id:
        return event.event_id
    return f"{event.transaction_reference or 'unreferenced'}:{event.event_type}"


def _owns_settlement(target: PaymentTarget) -> bool:
    """True when this event's own payment request is the one paying the invoice."""
    request = target.payment_request
    invoice = target.invoice
    return bool(request and invoice and request.invoice_id == invoice.id and request.status != REQUEST_FAILED)


def _receipt(event: PaymentEvent, target: PaymentTarget, *, requires_settlement: bool) -> CreateReceipt:
    invoice = target.invoice
    request = target.payment_request
    amount = event.amount
    if amount is None and request and request.amount is not None:
        amount = request.amount
    if amount is None:
        amount = invoice.total or 0.0
    return CreateReceipt(
        invoice_id=invoice.id,
        user_id=target.owner_id,
        amount=amount,
        reference=f"RCP-{event.transaction_reference or _per_event_ref(event)}",
        requires_settlement=requires_settlement,
    )


def _plan_payment_success(event: PaymentEvent, target: PaymentTarget, *, resumed: bool = False) -> Transition:
    if target.is_empty:
        return Transition(Outcome.UNRESOLVED, reason="correlation_not_found")

    effects: list[Effect] = []
    request = target.payment_request
    if request and request.status == REQUEST_PENDING:
        effects.append(CompletePaymentRequest(request.id))
        effects.append(
            RecordPaymentRequestEvent(
                request.id,
                "completed_via_webhook",
                {"provider_event_id": event.event_id, "event_type": event.event_type},
            )
        )

    invoice = target.invoice
    owned = _owns_settlement(target)
    if invoice and invoice.status == INVOICE_UNPAID:
        effects.append(MarkInvoicePaid(invoice.id))
        effects.append(_receipt(event, target, requires_settlement=not owned))
    elif invoice and invoice.status == INVOICE_PAID and (owned or resumed):
        # Receipt references are unique, so re-issuing after a partial failure is safe.
        effects.append(_receipt(event, target, requires_settlement=False))

    if not effects:
        return Transition(Outcome.NOOP, reason="already_settled", next_status=invoice.status if invoice else None)
    return Transition(Outcome.APPLIED, tuple(effects), next_status=INVOICE_PAID if invoice else None)


def _plan_payment_failure(event: PaymentEvent, target: PaymentTarget, provider: str) -> Transition:
    if target.is_empty:
        return Transition(Outcome.UNRESOLVED, reason="correlation_not_found")

    request = target.payment_request
    invoice_id = target.invoice.id if target.invoice else (request.invoice_id if request else None)
    amount = event.amount
    if amount is None:
        amount = request.amount if request and request.amount is not None else 0.0

    effects: list[Effect] = [
        CreatePaymentAttempt(
            invoice_id=invoice_id,
            user_id=target.owner_id or event.user_id,
            amount=amount,
            provider=provider,
            provider_ref=_per_event_ref(event),
            reason=event.reason or "Payment refused",
        )
    ]
    if request and request.status == REQUEST_PENDING:
        effects.append(FailPaymentRequest(request.id))
        effects.append(
            RecordPaymentRequestEvent(
                request.id,
                "failed_via_webhook",
                {"provider_event_id": event.event_id, "reason": event.reason},
            )
        )
    return Transition(Outcome.APPLIED, tuple(effects))


def _plan_refund(event: PaymentEvent, target: PaymentTarget, provider: str) -> Transition:
    invoice = target.invoice
    if invoice is None:
        return Transition(Outcome.UNRESOLVED, reason="invoice_not_found")

    amount = event.amount or 0.0
    effects: list[Effect] = [
        CreateCreditNote(
            invoice_id=invoice.id,
            user_id=invoice.user_id,
            amount=amount,
            provider_ref=_per_event_ref(event),
            reason=f"{provider.capitalize()} refund - {event.event_id or event.transaction_reference}",
        )
    ]
    next_status = invoice.status
    fully_refunded = invoice.total is not None and amount >= invoice.total
    if event.event_type == "refund.completed" and invoice.status == INVOICE_PAID and fully_refunded:
        effects.append(MarkInvoiceRefunded(invoice.id))
        next_status = INVOICE_REFUNDED
    return Transition(Outcome.APPLIED, tuple(effects), next_status=next_status)


def payment_event_needs_target(event: PaymentEvent) -> bool:
    kind = event.event_type
    return kind in PAYMENT_SUCCESS_KINDS or kind in PAYMENT_FAILURE_KINDS or kind in REFUND_KINDS


def plan_payment_event(
    event: PaymentEvent,
    target: PaymentTarget,
    *,
    provider: str,
    resumed: bool = False,
) -> Transition:
    """``resumed`` marks a redelivery that took over a failed or stale reservation."""
    kind = event.event_type
    if kind in PAYMENT_SUCCESS_KINDS:
        return _plan_payment_success(event, target, resumed=resumed)
    if kind in PAYMENT_FAILURE_KINDS:
        return _plan_payment_failure(event, target, provider)
    if kind in REFUND_KINDS:
        return _plan_refund(event, target, provider)
    if kind in DISPUTE_KINDS:
        return Transition(
            Outcome.APPLIED,
            (RecordUrgentAudit(event.transaction_reference or event.event_id, kind, event.payload),),
        )
    return Transition(Outcome.IGNORED, reason="unhandled_event_type")


def plan_invoice_payment(
    invoice: InvoiceSnapshot | None,
    *,
    user_id: str,
    provider_reference: str,
) -> Transition:
    """Synchronous pay-invoice request. Refuses to re-initiate a settled invoice."""
    if invoice is None or invoice.user_id != user_id:
        return Transition(Outcome.REJECTED, reason="invoice_not_found")
    if invoice.status == INVOICE_PAID:
        return Transition(Outcome.REJECTED, reason="invoice_already_paid")
    if invoice.status != INVOICE_UNPAID:
        return Transition(Outcome.REJECTED, reason="invoice_not_payable")
    return Transition(
        Outcome.APPLIED,
        (
            CreatePaymentRequest(
                invoice_id=invoice.id,
                user_id=user_id,
                amount=invoice.total or 0.0,
                currency=invoice.currency or "GBP",
                provider_reference=provider_reference,
            ),
        ),
    )


def plan_order_link(
    order: GuestOrderSnapshot | None,
    *,
    email: str,
    user_id: str,
    now: datetime,
) -> Transition:
    if order is None:
        return Transition(Outcome.REJECTED, reason="order_not_found")
    if order.email.strip().casefold() != email.strip().casefold():
        return Transition(Outcome.REJECTED, reason="email_mismatch")
    if order.user_id is not None:
        return Transition(Outcome.REJECTED, reason="already_linked")
    return Transition(
        Outcome.APPLIED,
        (LinkGuestOrder(order_id=order.id, user_id=user_id, linked_at=now.isoformat()),),
    )


CAMPAIGN_RECIPIENTS = "campaign_recipients"
COMMUNICATIONS_LOG = "communications_log"
TRACKABLE_TABLES = (CAMPAIGN_RECIPIENTS, COMMUNICATIONS_LOG)


def plan_email_open(tracking_id: str, *, now: datetime) -> Transition:
    # Both operations run on every delivery; only the first is idempotent.
    effects: list[Effect] = []
    for table in TRACKABLE_TABLES:
        effects.append(MarkRecipientOpened(table=table, recipient_id=tracking_id, opened_at=now.isoformat()))
        effects.append(IncrementOpenCount(table=table, recipient_id=tracking_id))
    return Transition(Outcome.APPLIED, tuple(effects))


def plan_first_open_followup(table: str, recipient: dict[str, Any]) -> Transition:
    campaign_id = recipient.get("campaign_id")
    if table != CAMPAIGN_RECIPIENTS or not campaign_id:
        return Transition(Outcome.NOOP)
    return Transition(Outcome.APPLIED, (IncrementCampaignOpens(str(campaign_id)),))
