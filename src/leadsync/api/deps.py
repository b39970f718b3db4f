"""FastAPI dependency injection for the sync engine's collaborators.

The composition root: only these dependencies (and the CLI) read
Settings. Tests replace get_orchestrator via app.dependency_overrides.
"""

from __future__ import annotations

from fastapi import Depends

from src.leadsync.config import get_settings
from src.leadsync.core.database import get_session
from src.leadsync.crm.client import ExternalCRMClient
from src.leadsync.crm.odoo import OdooClient
from src.leadsync.store.base import LeadStore
from src.leadsync.store.repository import SqlLeadStore
from src.leadsync.sync.orchestrator import SyncOrchestrator


async def get_store() -> LeadStore:
    """Internal store bound to the engine singleton's session factory."""
    return SqlLeadStore(session_factory=get_session)


async def get_crm_client() -> ExternalCRMClient:
    """Odoo client built from settings."""
    settings = get_settings()
    return OdooClient(
        settings.ODOO_URL,
        settings.ODOO_DATABASE,
        settings.ODOO_UID,
        settings.ODOO_API_KEY,
        model=settings.ODOO_MODEL,
        timeout=settings.ODOO_TIMEOUT_SECONDS,
        max_attempts=settings.ODOO_MAX_ATTEMPTS,
    )


async def get_orchestrator(
    client: ExternalCRMClient = Depends(get_crm_client),
    store: LeadStore = Depends(get_store),
) -> SyncOrchestrator:
    """Orchestrator for the configured company."""
    settings = get_settings()
    return SyncOrchestrator(
        client,
        store,
        settings.COMPANY_ID,
        page_size=settings.SYNC_PAGE_SIZE,
        window_days=settings.SYNC_WINDOW_DAYS,
        reconcile_window_days=settings.RECONCILE_WINDOW_DAYS,
        reconcile_batch_size=settings.RECONCILE_BATCH_SIZE,
        reconcile_concurrency=settings.RECONCILE_CONCURRENCY,
        drift_limit=settings.DRIFT_REPORT_LIMIT,
        dedup_batch_size=settings.DEDUP_DELETE_BATCH_SIZE,
        log_batch_size=settings.VALIDATION_LOG_BATCH_SIZE,
    )
