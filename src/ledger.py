"""Idempotency ledger backed by the ``event_ledger`` table.

Reservation is a single insert guarded by the unique constraint on
``natural_key``. A row left ``failed``, or ``processing`` beyond the lease, may
be taken over by one later delivery through a conditional update keyed on the
observed ``status`` and ``reserved_at``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from src.config import settings
from src.db import supabase
from src.domain.events import ExternalEvent
from src.domain.store_errors import is_unique_violation
from src.observability import incr_metric, log_event


LEDGER_TABLE = "event_ledger"

STATUS_PROCESSING = "processing"
STATUS_APPLIED = "applied"
STATUS_FAILED = "failed"


class Reservation(str, Enum):
    FIRST_SEEN = "first_seen"
    ALREADY_SEEN = "already_seen"


@dataclass(frozen=True)
class ReservationResult:
    status: Reservation
    natural_key: str
    previous_status: str | None = None
    reclaimed: bool = False

    @property
    def first_seen(self) -> bool:
        return self.status is Reservation.FIRST_SEEN


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None


def _lease_expired(reserved_at: str | None, now: datetime) -> bool:
    reserved = _parse_ts(reserved_at)
    if reserved is None:
        return True
    lease = timedelta(seconds=max(0, settings.ledger_reservation_lease_seconds))
    return reserved + lease <= now


def _try_reclaim(event: ExternalEvent, request_id: str | None) -> ReservationResult:
    existing = (
        supabase.table(LEDGER_TABLE)
        .select("natural_key, status, reserved_at")
        .eq("natural_key", event.natural_key)
        .execute()
    )
    if not existing.data:
        return ReservationResult(Reservation.ALREADY_SEEN, event.natural_key)

    row = existing.data[0]
    observed_status = row.get("status")
    now = _now()
    reclaimable = observed_status == STATUS_FAILED or (
        observed_status == STATUS_PROCESSING and _lease_expired(row.get("reserved_at"), now)
    )
    if not reclaimable:
        return ReservationResult(Reservation.ALREADY_SEEN, event.natural_key, previous_status=observed_status)

    query = (
        supabase.table(LEDGER_TABLE)
        .update(
            {
                "status": STATUS_PROCESSING,
                "reserved_at": now.isoformat(),
                "event_id": event.event_id,
                "last_error": None,
            }
        )
        .eq("natural_key", event.natural_key)
        .eq("status", observed_status)
    )
    if row.get("reserved_at") is None:
        query = query.is_("reserved_at", "null")
    else:
        query = query.eq("reserved_at", row["reserved_at"])
    taken = query.execute()
    if not taken.data:
        return ReservationResult(Reservation.ALREADY_SEEN, event.natural_key, previous_status=observed_status)

    incr_metric("ledger.reclaimed", channel=event.channel, previous_status=observed_status)
    log_event(
        "ledger_reservation_reclaimed",
        level=logging.WARNING,
        request_id=request_id,
        channel=event.channel,
        natural_key=event.natural_key,
        previous_status=observed_status,
    )
    return ReservationResult(
        Reservation.FIRST_SEEN,
        event.natural_key,
        previous_status=observed_status,
        reclaimed=True,
    )


def check_and_reserve(event: ExternalEvent, *, request_id: str | None = None) -> ReservationResult:
    try:
        supabase.table(LEDGER_TABLE).insert(
            {
                "natural_key": event.natural_key,
                "channel": event.channel.value,
                "event_kind": event.kind,
                "event_id": event.event_id,
                "status": STATUS_PROCESSING,
                "reserved_at": _now().isoformat(),
                "received_at": event.received_at.isoformat(),
            }
        ).execute()
    except Exception as exc:
        if not is_unique_violation(exc):
            raise
        result = _try_reclaim(event, request_id)
        if not result.first_seen:
            incr_metric("ledger.already_seen", channel=event.channel)
            log_event(
                "ledger_duplicate_ignored",
                request_id=request_id,
                channel=event.channel,
                natural_key=event.natural_key,
                previous_status=result.previous_status,
            )
        return result

    incr_metric("ledger.reserved", channel=event.channel)
    return ReservationResult(Reservation.FIRST_SEEN, event.natural_key)


def _finish(natural_key: str, values: dict[str, Any], *, request_id: str | None, outcome: str) -> bool:
    try:
        supabase.table(LEDGER_TABLE).update(values).eq("natural_key", natural_key).execute()
    except Exception as exc:
        # The domain write already happened; every effect is idempotent on its own row.
        incr_metric("ledger.finish_failed", outcome=outcome)
        log_event(
            "ledger_finish_failed",
            level=logging.ERROR,
            request_id=request_id,
            natural_key=natural_key,
            outcome=outcome,
            error=str(exc),
        )
        return False
    return True


def mark_applied(natural_key: str, outcome_summary: dict[str, Any], *, request_id: str | None = None) -> bool:
    return _finish(
        natural_key,
        {
            "status": STATUS_APPLIED,
            "first_applied_at": _now().isoformat(),
            "outcome_summary": outcome_summary,
            "last_error": None,
        },
        request_id=request_id,
        outcome=STATUS_APPLIED,
    )


def mark_failed(natural_key: str, error: str, *, request_id: str | None = None) -> bool:
    return _finish(
        natural_key,
        {"status": STATUS_FAILED, "last_error": error[:500]},
        request_id=request_id,
        outcome=STATUS_FAILED,
    )


def list_entries(*, status: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    query = supabase.table(LEDGER_TABLE).select(
        "natural_key, channel, event_kind, event_id, status, reserved_at, first_applied_at, "
        "outcome_summary, last_error, received_at"
    )
    if status:
        query = query.eq("status", status)
    result = query.order("reserved_at", desc=True).limit(limit).execute()
    return result.data or []
