from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class LedgerEntry(BaseModel):
    natural_key: str
    channel: Literal["payment_webhook", "order_link", "email_open"]
    event_kind: str | None = None
    event_id: str | None = None
    status: Literal["processing", "applied", "failed"]
    reserved_at: datetime | None = None
    first_applied_at: datetime | None = None
    outcome_summary: dict[str, Any] | None = None
    last_error: str | None = None
    received_at: datetime | None = None


class MetricsSnapshotResponse(BaseModel):
    counters: dict[str, int]


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int
    reset_after_persist: bool
