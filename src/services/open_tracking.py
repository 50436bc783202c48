from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.domain.transitions import (
    CAMPAIGN_RECIPIENTS,
    IncrementCampaignOpens,
    IncrementOpenCount,
    MarkRecipientOpened,
    plan_email_open,
    plan_first_open_followup,
)
from src.observability import incr_metric, log_event


@dataclass
class OpenResult:
    tracking_id: str
    first_open_tables: list[str] = field(default_factory=list)
    open_counts: dict[str, int] = field(default_factory=dict)
    failed_tables: list[str] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return bool(self.open_counts) or bool(self.first_open_tables)


def _mark_opened(effect: MarkRecipientOpened) -> dict[str, Any] | None:
    values: dict[str, Any] = {"opened_at": effect.opened_at}
    if effect.table == CAMPAIGN_RECIPIENTS:
        values["status"] = "opened"
    updated = (
        supabase.table(effect.table)
        .update(values)
        .eq("id", effect.recipient_id)
        .is_("opened_at", "null")
        .execute()
    )
    return updated.data[0] if updated.data else None


def _increment_open_count(effect: IncrementOpenCount) -> int | None:
    result = supabase.rpc(
        "increment_open_count",
        {"p_table": effect.table, "p_id": effect.recipient_id},
    ).execute()
    if result.data is None:
        return None
    return int(result.data)


def _increment_campaign_opens(effect: IncrementCampaignOpens) -> None:
    supabase.rpc("increment_campaign_opened_count", {"p_campaign_id": effect.campaign_id}).execute()


def record_email_open(tracking_id: str, *, request_id: str | None = None) -> OpenResult:
    """Apply one pixel fetch to every trackable table. Each table is handled independently."""
    result = OpenResult(tracking_id=tracking_id)
    transition = plan_email_open(tracking_id, now=datetime.now(timezone.utc))
    failed: set[str] = set()
    for effect in transition.effects:
        if effect.table in failed:
            continue
        try:
            if isinstance(effect, MarkRecipientOpened):
                first = _mark_opened(effect)
                if first is None:
                    continue
                result.first_open_tables.append(effect.table)
                for followup in plan_first_open_followup(effect.table, first).effects:
                    _increment_campaign_opens(followup)
            elif isinstance(effect, IncrementOpenCount):
                count = _increment_open_count(effect)
                if count is not None:
                    result.open_counts[effect.table] = count
        except Exception as exc:
            failed.add(effect.table)
            result.failed_tables.append(effect.table)
            incr_metric("email_open.write_failed", table=effect.table)
            log_event(
                "email_open_write_failed",
                level=logging.ERROR,
                request_id=request_id,
                tracking_id=tracking_id,
                table=effect.table,
                effect=type(effect).__name__,
                error=str(exc),
            )
    return result
