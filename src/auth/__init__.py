from src.auth.context import CustomerIdentity
from src.auth.dependencies import get_current_customer, require_internal_secret
from src.auth.gate import Allowed, Denied, authorize, authorize_customer, authorize_payment_webhook
from src.auth.jwt import create_customer_token

__all__ = [
    "Allowed",
    "CustomerIdentity",
    "Denied",
    "authorize",
    "authorize_customer",
    "authorize_payment_webhook",
    "create_customer_token",
    "get_current_customer",
    "require_internal_secret",
]
