"""REST endpoints for triggering sync and reconciliation runs.

Runs are synchronous from the caller's point of view: the response is the
run's structured summary. A scheduler (cron, Cloud Scheduler) is expected
to serialize calls per company.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from src.leadsync.api.deps import get_orchestrator
from src.leadsync.sync.errors import ExternalCRMError
from src.leadsync.sync.orchestrator import SyncOrchestrator
from src.leadsync.sync.schemas import ReconciliationReport, SyncMode, SyncSummary

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class SyncRunRequest(BaseModel):
    mode: SyncMode = SyncMode.INCREMENTAL


class ReconcileRequest(BaseModel):
    auto_fix: bool = False


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/run", response_model=SyncSummary)
async def run_sync(
    body: SyncRunRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncSummary:
    """Run one sync pass and return its summary.

    Returns 502 if the external CRM could not be read at all.
    """
    try:
        return await orchestrator.run_sync(body.mode)
    except ExternalCRMError as exc:
        logger.error("api.sync_run_failed", mode=body.mode.value, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"External CRM fetch failed: {exc}",
        ) from exc


@router.post("/reconcile", response_model=ReconciliationReport)
async def run_reconciliation(
    body: ReconcileRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> ReconciliationReport:
    """Build the reconciliation report, optionally auto-fixing safe drift."""
    try:
        return await orchestrator.run_reconciliation(auto_fix=body.auto_fix)
    except ExternalCRMError as exc:
        logger.error("api.reconcile_failed", auto_fix=body.auto_fix, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"External CRM fetch failed: {exc}",
        ) from exc
