import hmac

from fastapi import Header, HTTPException, Request, status

from src.auth.context import CustomerIdentity
from src.auth.gate import Denied, authorize_customer
from src.config import settings
from src.cors import restricted_cors_headers
from src.observability import incr_metric, log_event


async def get_current_customer(
    request: Request,
    authorization: str | None = Header(None),
) -> CustomerIdentity:
    """
    Customer bearer-token auth for user-facing endpoints.
    401 responses still carry the restricted CORS headers so browsers can read them.
    """
    decision = authorize_customer(authorization)
    if isinstance(decision, Denied):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header" if decision.reason == "missing_token" else "Invalid or expired token",
            headers=restricted_cors_headers(request.headers.get("Origin")),
        )
    return decision.identity


async def require_internal_secret(
    request: Request,
    x_internal_secret: str | None = Header(default=None),
) -> None:
    """Shared-secret auth for operator endpoints."""
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_api_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal api secret is not configured",
        )
    if not x_internal_secret or not hmac.compare_digest(x_internal_secret, configured_secret):
        incr_metric("internal.auth_failed")
        log_event("internal_auth_failed", request_id=request_id, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid internal secret",
        )
