from __future__ import annotations

import json
import logging
from collections import Counter
from enum import Enum
from threading import Lock
from typing import Any

import httpx

from src.config import settings


logger = logging.getLogger("storefront_reconciler")

SNAPSHOT_TABLE = "observability_metric_snapshots"

_counter_lock = Lock()
_counters: Counter[str] = Counter()


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return _normalize(value.value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    """Counter key: ``name`` or ``name|label=value,...`` with labels sorted."""
    if not labels:
        return name
    rendered = ",".join(f"{label}={labels[label]}" for label in sorted(labels))
    return f"{name}|{rendered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{label: _normalize(v) for label, v in labels.items()})
    with _counter_lock:
        _counters[key] += value


def metrics_snapshot() -> dict[str, int]:
    with _counter_lock:
        return dict(_counters)


def metric_total(name: str, snapshot: dict[str, int] | None = None) -> int:
    """Sum a counter across all of its label combinations."""
    counters = metrics_snapshot() if snapshot is None else snapshot
    return sum(value for key, value in counters.items() if key == name or key.startswith(f"{name}|"))


def reset_metrics() -> None:
    with _counter_lock:
        _counters.clear()


def _discard(snapshot: dict[str, int]) -> None:
    # Increments that landed after the snapshot was taken survive.
    with _counter_lock:
        for key, persisted in snapshot.items():
            remaining = _counters.get(key, 0) - persisted
            if remaining > 0:
                _counters[key] = remaining
            else:
                _counters.pop(key, None)


def _export(payload: dict[str, Any], *, request_id: str | None) -> bool:
    url = settings.observability_export_url
    if not url:
        return False
    headers = {"Content-Type": "application/json"}
    if settings.observability_export_bearer_token:
        headers["Authorization"] = f"Bearer {settings.observability_export_bearer_token}"
    try:
        with httpx.Client(timeout=settings.observability_export_timeout_seconds) as client:
            response = client.post(url, headers=headers, json=payload)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=payload["source"],
            status_code=exc.response.status_code,
            response_text=exc.response.text[:200],
        )
        return False
    except httpx.HTTPError as exc:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=payload["source"],
            error=str(exc),
        )
        return False
    log_event("metrics_snapshot_exported", request_id=request_id, source=payload["source"])
    return True


def persist_metrics_snapshot(
    client: Any,
    *,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
) -> bool:
    """Write the current counters to the snapshot table, then ship them to the export sink if one is set.

    Returns False when the table write fails; export failures are logged only.
    """
    snapshot = metrics_snapshot()
    payload = {"source": source, "request_id": request_id, "counters": snapshot}
    try:
        client.table(SNAPSHOT_TABLE).insert(payload).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    _export(payload, request_id=request_id)
    log_event("metrics_snapshot_persisted", request_id=request_id, source=source, counter_count=len(snapshot))
    if reset_after_persist:
        _discard(snapshot)
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
