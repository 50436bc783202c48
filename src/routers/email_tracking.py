from __future__ import annotations

import logging

from fastapi import APIRouter, Query, Request

from src.acknowledgment import email_open_ack
from src.auth.gate import authorize_email_open
from src.domain.events import is_uuid
from src.observability import incr_metric, log_event
from src.services.open_tracking import record_email_open


router = APIRouter(prefix="/api/tracking", tags=["tracking"])


@router.get("/open")
async def track_email_open(request: Request, tracking_id: str | None = Query(default=None, alias="id")):
    req_id = getattr(request.state, "request_id", None)
    authorize_email_open()
    incr_metric("email_open.received")

    if not tracking_id or not is_uuid(tracking_id):
        incr_metric("email_open.ignored", reason="invalid_tracking_id")
        log_event("email_open_ignored", request_id=req_id, reason="invalid_tracking_id", tracking_id=tracking_id)
        return email_open_ack()

    try:
        result = record_email_open(tracking_id, request_id=req_id)
    except Exception as exc:
        incr_metric("email_open.failed")
        log_event(
            "email_open_failed",
            level=logging.ERROR,
            request_id=req_id,
            tracking_id=tracking_id,
            error=str(exc),
        )
        return email_open_ack()

    if not result.matched:
        incr_metric("email_open.ignored", reason="unknown_tracking_id")
    else:
        incr_metric("email_open.recorded", first_open=bool(result.first_open_tables))
    log_event(
        "email_open_recorded",
        request_id=req_id,
        tracking_id=tracking_id,
        first_open_tables=result.first_open_tables,
        open_counts=result.open_counts,
        failed_tables=result.failed_tables,
    )
    return email_open_ack()
