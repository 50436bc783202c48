from uuid import uuid4

from fastapi import FastAPI, Request
from src.routers import (
    email_tracking,
    internal,
    invoice_payments,
    order_links,
    payment_webhooks,
)

app = FastAPI(title="Storefront Event Reconciler", version="0.1.0")


# CORS is decided per channel by src.cors; a global middleware would override it.
@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(payment_webhooks.router)
app.include_router(order_links.router)
app.include_router(email_tracking.router)
app.include_router(invoice_payments.router)
app.include_router(internal.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "storefront-event-reconciler"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
