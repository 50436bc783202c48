from __future__ import annotations

from datetime import datetime, timezone

from src.db import supabase
from src.domain.transitions import GuestOrderSnapshot, LinkGuestOrder, Outcome, plan_order_link


class OrderLinkRejected(Exception):
    def __init__(self, reason: str, order_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.order_id = order_id


def load_guest_order(order_number: str) -> GuestOrderSnapshot | None:
    result = (
        supabase.table("guest_orders")
        .select("id, order_number, email, user_id, linked_at")
        .eq("order_number", order_number)
        .execute()
    )
    if not result.data:
        return None
    row = result.data[0]
    return GuestOrderSnapshot(
        id=str(row["id"]),
        order_number=row["order_number"],
        email=row.get("email") or "",
        user_id=row.get("user_id"),
        linked_at=row.get("linked_at"),
    )


def _claim_order(effect: LinkGuestOrder) -> bool:
    # Only the first writer sees a row back; user_id is never overwritten.
    updated = (
        supabase.table("guest_orders")
        .update({"user_id": effect.user_id, "linked_at": effect.linked_at})
        .eq("id", effect.order_id)
        .is_("user_id", "null")
        .execute()
    )
    return bool(updated.data)


def link_guest_order(*, order_number: str, email: str, user_id: str) -> GuestOrderSnapshot:
    """Bind a guest order to the caller and return it. Raises OrderLinkRejected on any failed precondition."""
    order = load_guest_order(order_number)
    transition = plan_order_link(order, email=email, user_id=user_id, now=datetime.now(timezone.utc))
    if transition.outcome is not Outcome.APPLIED:
        raise OrderLinkRejected(transition.reason or "order_not_found", order.id if order else None)

    for effect in transition.effects:
        if not _claim_order(effect):
            raise OrderLinkRejected("already_linked", order.id)
    return order
