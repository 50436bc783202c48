from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from src.auth import require_internal_secret
from src.db import supabase
from src.ledger import list_entries
from src.models.internal import LedgerEntry, MetricsSnapshotFlushResponse, MetricsSnapshotResponse
from src.observability import metrics_snapshot, persist_metrics_snapshot


router = APIRouter(
    prefix="/api/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_secret)],
)


@router.get("/observability/metrics", response_model=MetricsSnapshotResponse)
async def get_metrics():
    return MetricsSnapshotResponse(counters=metrics_snapshot())


@router.post("/observability/metrics/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics(request: Request, reset: bool = Query(default=False)):
    request_id = getattr(request.state, "request_id", None)
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase,
        source="internal_flush",
        request_id=request_id,
        reset_after_persist=reset,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source="internal_flush",
        counter_count=counter_count,
        reset_after_persist=reset and persisted,
    )


@router.get("/ledger", response_model=list[LedgerEntry])
async def list_ledger_entries(
    status: Literal["processing", "applied", "failed"] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    return [LedgerEntry(**row) for row in list_entries(status=status, limit=limit)]
