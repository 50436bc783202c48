from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src.db import supabase
from src.observability import incr_metric, log_event


AUDIT_TABLE = "audit_logs"


def record_audit(
    action: str,
    entity: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    *,
    request_id: str | None = None,
) -> bool:
    """Append an audit row. Never raises; a failed write is logged and counted."""
    row = {
        "action": action,
        "entity": entity,
        "entity_id": entity_id,
        "metadata": {
            **(metadata or {}),
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        },
    }
    if request_id:
        row["metadata"]["request_id"] = request_id
    try:
        supabase.table(AUDIT_TABLE).insert(row).execute()
    except Exception as exc:
        incr_metric("audit.write_failed", action=action)
        log_event(
            "audit_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            error=str(exc),
        )
        return False
    incr_metric("audit.recorded", action=action)
    return True
