from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request

from src.acknowledgment import payment_webhook_ack, preflight
from src.audit import record_audit
from src.auth.gate import Denied, authorize
from src.config import settings
from src.cors import payment_webhook_cors_headers
from src.domain.events import Channel, MalformedEventError, parse_payment_event
from src.observability import incr_metric, log_event
from src.services.payments import process_payment_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@router.options("/payments")
async def payment_webhook_preflight():
    return preflight(payment_webhook_cors_headers())


@router.post("/payments")
async def ingest_payment_webhook(request: Request):
    req_id = _request_id(request)
    provider = settings.payment_provider
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug=provider)

    decision = authorize(Channel.PAYMENT_WEBHOOK, headers=request.headers, raw_body=raw_body)
    if isinstance(decision, Denied):
        level = logging.ERROR if decision.reason == "secret_not_configured" else logging.WARNING
        incr_metric("webhook.events.rejected", provider_slug=provider, reason=decision.reason)
        log_event(
            "webhook_signature_rejected",
            level=level,
            request_id=req_id,
            provider_slug=provider,
            reason=decision.reason,
        )
        record_audit(
            "payment_webhook_rejected",
            "payment",
            None,
            {"reason": decision.reason, "provider": provider},
            request_id=req_id,
        )
        return payment_webhook_ack(None)

    try:
        event = parse_payment_event(json.loads(raw_body))
    except (MalformedEventError, ValueError) as exc:
        incr_metric("webhook.events.malformed", provider_slug=provider)
        log_event(
            "webhook_malformed",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug=provider,
            error=str(exc),
        )
        record_audit(
            "payment_webhook_malformed",
            "payment",
            None,
            {"error": str(exc), "provider": provider, "body_size": len(raw_body)},
            request_id=req_id,
        )
        return payment_webhook_ack(None)

    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug=provider,
        event_type=event.event_type,
        event_id=event.event_id,
        transaction_reference=event.transaction_reference,
    )
    audit_metadata = {
        "eventType": event.event_type,
        "eventId": event.event_id,
        "eventTimestamp": event.event_timestamp,
        "signatureVerified": True,
        "payload": event.payload,
    }
    audit_entity_id = event.transaction_reference or event.event_id

    try:
        result = process_payment_event(event, raw_body=raw_body, request_id=req_id)
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug=provider)
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug=provider,
            event_type=event.event_type,
            event_id=event.event_id,
            error=str(exc),
        )
        record_audit(
            "payment_webhook",
            "payment",
            audit_entity_id,
            {**audit_metadata, "outcome": "failed", "error": str(exc)},
            request_id=req_id,
        )
        return payment_webhook_ack(event.event_id, error=str(exc))

    log_event(
        "webhook_processed",
        request_id=req_id,
        provider_slug=provider,
        event_type=event.event_type,
        event_id=event.event_id,
        natural_key=result.natural_key,
        outcome=result.outcome,
        reason=result.reason,
        applied_effects=result.applied_effects,
    )
    record_audit(
        "payment_webhook",
        "payment",
        audit_entity_id,
        {**audit_metadata, **result.summary(), "naturalKey": result.natural_key},
        request_id=req_id,
    )
    return payment_webhook_ack(event.event_id)
