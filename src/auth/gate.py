"""Per-channel authorization decisions.

The gate only decides; it never writes. Callers turn a :class:`Denied` into
the response their channel requires.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from src.auth.context import CustomerIdentity
from src.auth.jwt import decode_customer_token
from src.config import settings
from src.domain.events import Channel


@dataclass(frozen=True)
class Allowed:
    identity: CustomerIdentity | None = None
    allowed: bool = True


@dataclass(frozen=True)
class Denied:
    reason: str
    allowed: bool = False


GateDecision = Allowed | Denied


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def authorize_payment_webhook(raw_body: bytes, signature_header: str | None) -> GateDecision:
    secret = settings.payment_webhook_secret
    if not secret:
        return Denied("secret_not_configured")
    if not signature_header:
        return Denied("missing_signature")
    expected = compute_signature(secret, raw_body)
    if not hmac.compare_digest(expected, signature_header.strip().lower()):
        return Denied("invalid_signature")
    return Allowed()


def authorize_customer(authorization: str | None) -> GateDecision:
    token = extract_bearer_token(authorization)
    if not token:
        return Denied("missing_token")
    claims = decode_customer_token(token)
    if not claims:
        return Denied("invalid_token")
    return Allowed(
        CustomerIdentity(
            user_id=str(claims["sub"]),
            email=claims.get("email"),
            role=claims.get("role"),
        )
    )


def authorize_email_open() -> GateDecision:
    return Allowed()


def authorize(channel: Channel, *, headers: Mapping[str, str], raw_body: bytes = b"") -> GateDecision:
    if channel is Channel.PAYMENT_WEBHOOK:
        return authorize_payment_webhook(raw_body, headers.get(settings.payment_webhook_signature_header))
    if channel is Channel.ORDER_LINK:
        return authorize_customer(headers.get("Authorization"))
    return authorize_email_open()
