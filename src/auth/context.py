from dataclasses import dataclass


@dataclass(frozen=True)
class CustomerIdentity:
    """Identity of a signed-in storefront customer, taken from the bearer token."""
    user_id: str
    email: str | None = None
    role: str | None = None
