from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from src.audit import record_audit
from src.config import settings
from src.db import supabase
from src.domain.events import PaymentEvent, is_uuid, payment_external_event
from src.domain.store_errors import StoreError, is_unique_violation
from src.domain.transitions import (
    INVOICE_PAID,
    INVOICE_UNPAID,
    REQUEST_PENDING,
    CompletePaymentRequest,
    CreateCreditNote,
    CreatePaymentAttempt,
    CreatePaymentRequest,
    CreateReceipt,
    Effect,
    FailPaymentRequest,
    InvoiceSnapshot,
    MarkInvoicePaid,
    MarkInvoiceRefunded,
    Outcome,
    PaymentRequestSnapshot,
    PaymentTarget,
    RecordPaymentRequestEvent,
    RecordUrgentAudit,
    Transition,
    payment_event_needs_target,
    plan_invoice_payment,
    plan_payment_event,
)
from src.ledger import check_and_reserve, mark_applied, mark_failed
from src.observability import incr_metric, log_event


OUTCOME_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PaymentProcessingResult:
    natural_key: str
    outcome: str
    reason: str | None = None
    invoice_id: str | None = None
    applied_effects: tuple[str, ...] = ()
    skipped_effects: tuple[str, ...] = ()
    reclaimed: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reason": self.reason,
            "invoice_id": self.invoice_id,
            "applied_effects": list(self.applied_effects),
            "skipped_effects": list(self.skipped_effects),
        }


@dataclass
class _EffectLog:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unsettled_invoices: set[str] = field(default_factory=set)
    unchanged_requests: set[str] = field(default_factory=set)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_invoice(invoice_id: str, *, user_id: str | None = None) -> InvoiceSnapshot | None:
    if not is_uuid(invoice_id):
        return None
    query = supabase.table("invoices").select("id, user_id, status, total, currency").eq("id", invoice_id)
    if user_id is not None:
        query = query.eq("user_id", user_id)
    result = query.execute()
    if not result.data:
        return None
    row = result.data[0]
    return InvoiceSnapshot(
        id=str(row["id"]),
        status=row.get("status") or INVOICE_UNPAID,
        user_id=row.get("user_id"),
        total=float(row["total"]) if row.get("total") is not None else None,
        currency=row.get("currency"),
    )


def _load_payment_request(transaction_reference: str) -> PaymentRequestSnapshot | None:
    result = (
        supabase.table("payment_requests")
        .select("id, invoice_id, user_id, amount, status")
        .eq("provider_reference", transaction_reference)
        .execute()
    )
    if not result.data:
        return None
    row = result.data[0]
    return PaymentRequestSnapshot(
        id=str(row["id"]),
        status=row.get("status") or REQUEST_PENDING,
        invoice_id=row.get("invoice_id"),
        user_id=row.get("user_id"),
        amount=float(row["amount"]) if row.get("amount") is not None else None,
    )


def resolve_payment_target(event: PaymentEvent) -> PaymentTarget:
    """Correlate an event with its payment request and invoice through structured fields only."""
    payment_request = None
    if event.transaction_reference:
        payment_request = _load_payment_request(event.transaction_reference)

    invoice_id = payment_request.invoice_id if payment_request and payment_request.invoice_id else event.invoice_id
    invoice = _load_invoice(invoice_id) if invoice_id else None
    return PaymentTarget(invoice=invoice, payment_request=payment_request)


def _insert_once(table: str, row: dict[str, Any]) -> bool:
    try:
        supabase.table(table).insert(row).execute()
    except Exception as exc:
        if is_unique_violation(exc):
            return False
        raise
    return True


def _conditional_update(table: str, values: dict[str, Any], *, row_id: str, expected_status: str) -> bool:
    updated = (
        supabase.table(table)
        .update(values)
        .eq("id", row_id)
        .eq("status", expected_status)
        .execute()
    )
    return bool(updated.data)


def _apply_effect(effect: Effect, log: _EffectLog, *, request_id: str | None) -> bool:
    now_iso = _now_iso()
    if isinstance(effect, MarkInvoicePaid):
        changed = _conditional_update(
            "invoices",
            {"status": INVOICE_PAID, "updated_at": now_iso},
            row_id=effect.invoice_id,
            expected_status=INVOICE_UNPAID,
        )
        if not changed:
            log.unsettled_invoices.add(effect.invoice_id)
        return changed
    if isinstance(effect, MarkInvoiceRefunded):
        return _conditional_update(
            "invoices",
            {"status": "refunded", "updated_at": now_iso},
            row_id=effect.invoice_id,
            expected_status=INVOICE_PAID,
        )
    if isinstance(effect, (CompletePaymentRequest, FailPaymentRequest)):
        values = {"status": "completed", "completed_at": now_iso, "updated_at": now_iso}
        if isinstance(effect, FailPaymentRequest):
            values = {"status": "failed", "updated_at": now_iso}
        changed = _conditional_update(
            "payment_requests",
            values,
            row_id=effect.request_id,
            expected_status=REQUEST_PENDING,
        )
        if not changed:
            log.unchanged_requests.add(effect.request_id)
        return changed
    if isinstance(effect, RecordPaymentRequestEvent):
        # The transition belongs to whichever handler won the status update.
        if effect.request_id in log.unchanged_requests:
            return False
        supabase.table("payment_request_events").insert(
            {"request_id": effect.request_id, "event_type": effect.event_type, "metadata": effect.metadata}
        ).execute()
        return True
    if isinstance(effect, CreateReceipt):
        # Another writer settled the invoice first; its receipt is theirs to issue.
        if effect.requires_settlement and effect.invoice_id in log.unsettled_invoices:
            return False
        return _insert_once(
            "receipts",
            {
                "invoice_id": effect.invoice_id,
                "user_id": effect.user_id,
                "amount": effect.amount,
                "method": "card",
                "reference": effect.reference,
                "paid_at": now_iso,
            },
        )
    if isinstance(effect, CreatePaymentAttempt):
        return _insert_once(
            "payment_attempts",
            {
                "invoice_id": effect.invoice_id,
                "user_id": effect.user_id,
                "amount": effect.amount,
                "status": "failed",
                "provider": effect.provider,
                "provider_ref": effect.provider_ref,
                "reason": effect.reason,
            },
        )
    if isinstance(effect, CreateCreditNote):
        return _insert_once(
            "credit_notes",
            {
                "invoice_id": effect.invoice_id,
                "user_id": effect.user_id,
                "amount": effect.amount,
                "reason": effect.reason,
                "provider_ref": effect.provider_ref,
            },
        )
    if isinstance(effect, RecordUrgentAudit):
        log_event(
            "payment_dispute_received",
            level=logging.WARNING,
            request_id=request_id,
            event_type=effect.event_type,
            entity_id=effect.entity_id,
        )
        written = record_audit(
            "chargeback_received",
            "payment",
            effect.entity_id,
            {"urgent": True, "eventType": effect.event_type, "payload": effect.payload},
            request_id=request_id,
        )
        if not written:
            raise StoreError("chargeback_audit", "urgent audit entry was not written")
        return True
    raise TypeError(f"Unsupported payment effect: {type(effect).__name__}")


def apply_payment_effects(transition: Transition, *, request_id: str | None = None) -> _EffectLog:
    log = _EffectLog()
    for effect in transition.effects:
        name = type(effect).__name__
        if _apply_effect(effect, log, request_id=request_id):
            log.applied.append(name)
        else:
            log.skipped.append(name)
    return log


def process_payment_event(
    event: PaymentEvent,
    *,
    raw_body: bytes,
    request_id: str | None = None,
) -> PaymentProcessingResult:
    external = payment_external_event(event, raw_body)
    reservation = check_and_reserve(external, request_id=request_id)
    if not reservation.first_seen:
        incr_metric("webhook.events.duplicate", provider_slug=settings.payment_provider)
        return PaymentProcessingResult(
            natural_key=external.natural_key,
            outcome=OUTCOME_DUPLICATE,
            reason=f"ledger_{reservation.previous_status or 'seen'}",
        )

    try:
        target = resolve_payment_target(event) if payment_event_needs_target(event) else PaymentTarget()
        transition = plan_payment_event(
            event,
            target,
            provider=settings.payment_provider,
            resumed=reservation.reclaimed,
        )
        effect_log = apply_payment_effects(transition, request_id=request_id)
    except Exception as exc:
        mark_failed(external.natural_key, str(exc), request_id=request_id)
        raise

    invoice_id = target.invoice.id if target.invoice else None
    outcome = transition.outcome.value
    reason = transition.reason
    if transition.outcome is Outcome.APPLIED and not effect_log.applied:
        outcome = Outcome.NOOP.value
        reason = reason or "already_applied"
    result = PaymentProcessingResult(
        natural_key=external.natural_key,
        outcome=outcome,
        reason=reason,
        invoice_id=invoice_id,
        applied_effects=tuple(effect_log.applied),
        skipped_effects=tuple(effect_log.skipped),
        reclaimed=reservation.reclaimed,
    )
    mark_applied(external.natural_key, result.summary(), request_id=request_id)
    incr_metric("webhook.events.processed", provider_slug=settings.payment_provider, outcome=outcome)
    return result


class PaymentInitiationRejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def new_transaction_reference() -> str:
    return f"INV-{uuid4().hex}"


def initiate_invoice_payment(
    invoice_id: str,
    *,
    user_id: str,
    request_id: str | None = None,
) -> dict[str, Any]:
    invoice = _load_invoice(invoice_id, user_id=user_id)
    transition = plan_invoice_payment(
        invoice,
        user_id=user_id,
        provider_reference=new_transaction_reference(),
    )
    if transition.outcome is not Outcome.APPLIED:
        incr_metric("invoice_payment.rejected", reason=transition.reason)
        log_event(
            "invoice_payment_rejected",
            request_id=request_id,
            invoice_id=invoice_id,
            user_id=user_id,
            reason=transition.reason,
        )
        raise PaymentInitiationRejected(transition.reason or "invoice_not_payable")

    effect: CreatePaymentRequest = transition.effects[0]
    created = supabase.table("payment_requests").insert(
        {
            "invoice_id": effect.invoice_id,
            "user_id": effect.user_id,
            "amount": effect.amount,
            "currency": effect.currency,
            "status": REQUEST_PENDING,
            "provider_reference": effect.provider_reference,
        }
    ).execute()
    if not created.data:
        raise StoreError("payment_request_insert", "no row returned")
    row = created.data[0]

    incr_metric("invoice_payment.initiated")
    log_event(
        "invoice_payment_initiated",
        request_id=request_id,
        invoice_id=effect.invoice_id,
        payment_request_id=row["id"],
        transaction_reference=effect.provider_reference,
    )
    record_audit(
        "payment_initiated",
        "invoice",
        effect.invoice_id,
        {"payment_request_id": row["id"], "transaction_reference": effect.provider_reference, "amount": effect.amount},
        request_id=request_id,
    )
    return {
        "payment_request_id": str(row["id"]),
        "invoice_id": effect.invoice_id,
        "transaction_reference": effect.provider_reference,
        "amount": effect.amount,
        "currency": effect.currency,
        "status": REQUEST_PENDING,
        "metadata": {"invoiceId": effect.invoice_id, "userId": user_id},
        "created_at": row.get("created_at"),
    }
