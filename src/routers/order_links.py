from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from pydantic import ValidationError

from src.acknowledgment import order_link_rejection, order_link_success, preflight
from src.audit import record_audit
from src.auth.gate import Denied, authorize
from src.cors import restricted_cors_headers
from src.domain.events import Channel, order_link_natural_key
from src.models.order_links import LinkOrderRequest
from src.observability import incr_metric, log_event
from src.services.order_links import OrderLinkRejected, link_guest_order


router = APIRouter(prefix="/api/orders", tags=["orders"])


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _validation_reason(exc: ValidationError) -> str:
    fields = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
    if "orderNumber" in fields or "order_number" in fields:
        return "invalid_order_number"
    if "email" in fields:
        return "invalid_email"
    return "invalid_body"


async def _parse_body(request: Request) -> LinkOrderRequest | str:
    try:
        payload = json.loads(await request.body())
    except ValueError:
        return "invalid_body"
    if not isinstance(payload, dict):
        return "invalid_body"
    try:
        return LinkOrderRequest.model_validate(payload)
    except ValidationError as exc:
        return _validation_reason(exc)


@router.options("/link")
async def link_order_preflight(request: Request):
    return preflight(restricted_cors_headers(request.headers.get("Origin")))


@router.post("/link")
async def link_order(request: Request):
    req_id = _request_id(request)
    origin = request.headers.get("Origin")

    decision = authorize(Channel.ORDER_LINK, headers=request.headers)
    if isinstance(decision, Denied):
        incr_metric("order_link.rejected", reason=decision.reason)
        log_event("order_link_unauthorized", level=logging.WARNING, request_id=req_id, reason=decision.reason)
        return order_link_rejection(decision.reason, origin)
    user_id = decision.identity.user_id

    parsed = await _parse_body(request)
    if isinstance(parsed, str):
        incr_metric("order_link.rejected", reason=parsed)
        log_event("order_link_invalid_input", request_id=req_id, user_id=user_id, reason=parsed)
        return order_link_rejection(parsed, origin)

    natural_key = order_link_natural_key(parsed.order_number, parsed.email)
    try:
        order = link_guest_order(order_number=parsed.order_number, email=parsed.email, user_id=user_id)
    except OrderLinkRejected as exc:
        incr_metric("order_link.rejected", reason=exc.reason)
        log_event(
            "order_link_rejected",
            level=logging.WARNING,
            request_id=req_id,
            user_id=user_id,
            order_number=parsed.order_number,
            reason=exc.reason,
        )
        record_audit(
            "guest_order_link_rejected",
            "guest_order",
            exc.order_id,
            {
                "user_id": user_id,
                "order_number": parsed.order_number,
                "reason": exc.reason,
                "natural_key": natural_key,
            },
            request_id=req_id,
        )
        return order_link_rejection(exc.reason, origin)
    except Exception as exc:
        incr_metric("order_link.failed")
        log_event(
            "order_link_failed",
            level=logging.ERROR,
            request_id=req_id,
            user_id=user_id,
            order_number=parsed.order_number,
            error=str(exc),
        )
        return order_link_rejection("internal_error", origin)

    incr_metric("order_link.linked")
    log_event("order_link_linked", request_id=req_id, user_id=user_id, order_number=parsed.order_number)
    record_audit(
        "guest_order_linked",
        "guest_order",
        order.id,
        {"user_id": user_id, "order_number": parsed.order_number, "natural_key": natural_key},
        request_id=req_id,
    )
    return order_link_success(origin)
