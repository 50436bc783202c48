"""What each channel tells its caller.

Payment webhooks and tracking pixels acknowledge unconditionally so the far
side never learns how processing went. Order linking is a synchronous user
action and gets real status codes.
"""

from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse, Response

from src.cors import payment_webhook_cors_headers, restricted_cors_headers
from src.models.order_links import LinkOrderResponse
from src.models.payments import PaymentWebhookAck


# 1x1 transparent GIF
TRANSPARENT_GIF = bytes(
    [
        0x47, 0x49, 0x46, 0x38, 0x39, 0x61, 0x01, 0x00,
        0x01, 0x00, 0x80, 0x00, 0x00, 0xFF, 0xFF, 0xFF,
        0x00, 0x00, 0x00, 0x21, 0xF9, 0x04, 0x01, 0x00,
        0x00, 0x00, 0x00, 0x2C, 0x00, 0x00, 0x00, 0x00,
        0x01, 0x00, 0x01, 0x00, 0x00, 0x02, 0x02, 0x44,
        0x01, 0x00, 0x3B,
    ]
)

TRACKING_PIXEL_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
}

ORDER_LINK_REJECTIONS: dict[str, tuple[int, str]] = {
    "invalid_body": (status.HTTP_400_BAD_REQUEST, "Invalid request body"),
    "invalid_order_number": (status.HTTP_400_BAD_REQUEST, "Invalid order number"),
    "invalid_email": (status.HTTP_400_BAD_REQUEST, "Invalid email"),
    "missing_token": (status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    "invalid_token": (status.HTTP_401_UNAUTHORIZED, "Unauthorized - Invalid token"),
    "email_mismatch": (status.HTTP_403_FORBIDDEN, "Email does not match order"),
    "order_not_found": (status.HTTP_404_NOT_FOUND, "Order not found"),
    "already_linked": (status.HTTP_409_CONFLICT, "Order already linked to an account"),
    "internal_error": (status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"),
}

INVOICE_PAYMENT_REJECTIONS: dict[str, tuple[int, str]] = {
    "invoice_not_found": (status.HTTP_404_NOT_FOUND, "Invoice not found"),
    "invoice_already_paid": (status.HTTP_409_CONFLICT, "Invoice is already paid"),
    "invoice_not_payable": (status.HTTP_409_CONFLICT, "Invoice cannot be paid"),
}


def payment_webhook_ack(event_id: str | None, *, error: str | None = None) -> JSONResponse:
    ack = PaymentWebhookAck(eventId=event_id, error=error or None)
    body = ack.model_dump(by_alias=True, exclude={"error"} if ack.error is None else None)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body, headers=payment_webhook_cors_headers())


def email_open_ack() -> Response:
    return Response(
        content=TRANSPARENT_GIF,
        status_code=status.HTTP_200_OK,
        media_type="image/gif",
        headers=TRACKING_PIXEL_HEADERS,
    )


def order_link_success(origin: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=LinkOrderResponse(success=True, message="Order linked successfully").model_dump(),
        headers=restricted_cors_headers(origin),
    )


def order_link_rejection(reason: str, origin: str | None) -> JSONResponse:
    status_code, message = ORDER_LINK_REJECTIONS.get(reason, ORDER_LINK_REJECTIONS["internal_error"])
    return JSONResponse(
        status_code=status_code,
        content={"error": message},
        headers=restricted_cors_headers(origin),
    )


def preflight(headers: dict[str, str]) -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=headers)
