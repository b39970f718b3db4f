"""Prometheus metrics for sync and reconciliation runs.

Provides:
- Run, record, warning, dedup and drift collectors
- track_sync_run(): Context manager recording run duration and status
- get_metrics_response(): Exposition format response for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.responses import Response

# ── Run Metrics ──────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Total sync and reconciliation runs",
    ["mode", "status"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Sync run duration in seconds",
    ["mode"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

# ── Record Metrics ───────────────────────────────────────────────────────────

sync_records_total = Counter(
    "sync_records_total",
    "External records processed by outcome",
    ["mode", "outcome"],
)

sync_validation_warnings_total = Counter(
    "sync_validation_warnings_total",
    "Validation warnings produced by severity",
    ["severity"],
)

dedup_deleted_total = Counter(
    "dedup_deleted_total",
    "Duplicate leads deleted after rollback logging",
)

dedup_failed_total = Counter(
    "dedup_failed_total",
    "Duplicate leads left in place because logging or deletion failed",
)

reconciliation_drift_total = Counter(
    "reconciliation_drift_total",
    "Leads found drifted from the external CRM",
    ["source"],
)


# ── Run Tracking Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(mode: str) -> AsyncGenerator[None, None]:
    """Record duration and success/failure of one run.

    Usage:
        async with track_sync_run("incremental"):
            summary = await orchestrator.run_sync(...)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        sync_run_duration_seconds.labels(mode=mode).observe(
            time.perf_counter() - start_time
        )
        sync_runs_total.labels(mode=mode, status=status).inc()


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
