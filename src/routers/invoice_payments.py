from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.acknowledgment import INVOICE_PAYMENT_REJECTIONS, preflight
from src.auth import CustomerIdentity, get_current_customer
from src.cors import restricted_cors_headers
from src.models.payments import PaymentInitiationResponse
from src.observability import incr_metric, log_event
from src.services.payments import PaymentInitiationRejected, initiate_invoice_payment


router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.options("/{invoice_id}/payments")
async def invoice_payment_preflight(invoice_id: str, request: Request):
    return preflight(restricted_cors_headers(request.headers.get("Origin")))


@router.post(
    "/{invoice_id}/payments",
    response_model=PaymentInitiationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_invoice_payment(
    invoice_id: str,
    request: Request,
    customer: CustomerIdentity = Depends(get_current_customer),
):
    req_id = getattr(request.state, "request_id", None)
    cors = restricted_cors_headers(request.headers.get("Origin"))
    try:
        created = initiate_invoice_payment(invoice_id, user_id=customer.user_id, request_id=req_id)
    except PaymentInitiationRejected as exc:
        status_code, message = INVOICE_PAYMENT_REJECTIONS[exc.reason]
        raise HTTPException(status_code=status_code, detail=message, headers=cors) from exc
    except Exception as exc:
        incr_metric("invoice_payment.failed")
        log_event(
            "invoice_payment_failed",
            level=logging.ERROR,
            request_id=req_id,
            invoice_id=invoice_id,
            user_id=customer.user_id,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start payment",
            headers=cors,
        ) from exc
    return PaymentInitiationResponse(**created)
