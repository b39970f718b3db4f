"""Sync orchestrator -- one run of fetch, dedup, upsert, reconcile, persist.

State machine:

    PENDING -> FETCHING -> DEDUPING -> PROCESSING -> RECONCILING
            -> PERSISTING_LOG -> DONE

FAILED is reachable from FETCHING only: a fetch that cannot start aborts
the run. Every later failure is scoped to a record, batch or log write and
is absorbed into the summary counters.

Dedup always completes before the first upsert, because upsert decisions
depend on which survivor represents each external id.

A single writer per company is assumed; overlapping runs must be
serialized by the scheduler.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from src.leadsync.core.monitoring import (
    sync_records_total,
    sync_validation_warnings_total,
    track_sync_run,
)
from src.leadsync.crm.domain import build_sync_domain
from src.leadsync.sync.dedup import Deduplicator
from src.leadsync.sync.errors import FetchAbortedError
from src.leadsync.sync.fetch import fetch_all
from src.leadsync.sync.reconcile import Reconciler
from src.leadsync.sync.schemas import (
    ExternalRecord,
    ReconciliationReport,
    SyncMode,
    SyncState,
    SyncSummary,
    UpsertAction,
    ValidationWarning,
)
from src.leadsync.sync.stages import DEFAULT_TAXONOMY, StageTaxonomy
from src.leadsync.sync.upsert import UpsertEngine
from src.leadsync.sync.validation import ValidationLogWriter, summarize_warnings

if TYPE_CHECKING:
    from src.leadsync.crm.client import ExternalCRMClient
    from src.leadsync.store.base import LeadStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs sync and reconciliation passes for one company.

    Args:
        client: External CRM client.
        store: Internal store.
        company_id: Tenant whose leads are mirrored.
        taxonomy: Stage taxonomy injected into every component.
        page_size: Page size of the main fetch.
        window_days: Incremental sync window.
        reconcile_window_days: Window of the reconciliation report.
        reconcile_batch_size: Ids per targeted reconciliation lookup.
        reconcile_concurrency: Targeted lookups in flight at once.
        drift_limit: Cap on drift entries in the summary.
        dedup_batch_size: Ids per dedup delete call.
        log_batch_size: Rows per validation log insert.
        clock: Returns the current UTC time (overridable in tests).
    """

    def __init__(
        self,
        client: ExternalCRMClient,
        store: LeadStore,
        company_id: str,
        *,
        taxonomy: StageTaxonomy = DEFAULT_TAXONOMY,
        page_size: int = 200,
        window_days: int = 5,
        reconcile_window_days: int = 5,
        reconcile_batch_size: int = 50,
        reconcile_concurrency: int = 4,
        drift_limit: int = 50,
        dedup_batch_size: int = 50,
        log_batch_size: int = 100,
        clock=_utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._company_id = company_id
        self._taxonomy = taxonomy
        self._page_size = page_size
        self._window_days = window_days
        self._reconcile_window_days = reconcile_window_days
        self._clock = clock
        self._deduplicator = Deduplicator(store, delete_batch_size=dedup_batch_size)
        self._reconciler = Reconciler(
            client,
            store,
            company_id,
            taxonomy=taxonomy,
            batch_size=reconcile_batch_size,
            concurrency=reconcile_concurrency,
            drift_limit=drift_limit,
            page_size=page_size,
        )
        self._log_writer = ValidationLogWriter(store, batch_size=log_batch_size)
        self.state = SyncState.PENDING

    def _transition(self, state: SyncState) -> None:
        logger.debug("sync.state", from_state=self.state.value, to_state=state.value)
        self.state = state

    # ── Sync Run ────────────────────────────────────────────────────────────

    async def run_sync(self, mode: SyncMode = SyncMode.INCREMENTAL) -> SyncSummary:
        """Execute one sync run.

        Raises:
            FetchAbortedError: If the fetch phase fails before any data is
                retrieved; the orchestrator state is FAILED.
        """
        mode = SyncMode(mode)
        self.state = SyncState.PENDING
        run_at = self._clock()
        synced_at = run_at.isoformat()
        log = logger.bind(mode=mode.value, company_id=self._company_id)

        async with track_sync_run(mode.value):
            # Fetch
            self._transition(SyncState.FETCHING)
            domain = build_sync_domain(mode.value, run_at, self._window_days)
            try:
                fetch = await fetch_all(self._client, domain, page_size=self._page_size)
            except FetchAbortedError:
                self._transition(SyncState.FAILED)
                log.error("sync.run_failed", state=SyncState.FAILED.value)
                raise

            summary = SyncSummary(
                mode=mode,
                total=len(fetch.rows),
                fetch_truncated=fetch.truncated,
            )
            log.info("sync.fetched", total=summary.total, expected=fetch.expected)

            # Dedup
            self._transition(SyncState.DEDUPING)
            leads = await self._store.list_synced_leads(self._company_id)
            dedup = await self._deduplicator.dedupe(leads)
            summary.dedup_deleted = dedup.deleted
            summary.dedup_failed = dedup.failed
            survivors = dict(dedup.survivors)

            # Process
            self._transition(SyncState.PROCESSING)
            warnings: list[ValidationWarning] = []
            lead_ids: dict[str, str] = {}
            engine = UpsertEngine(self._store, self._company_id, taxonomy=self._taxonomy)

            for raw in fetch.rows:
                external_id = raw.get("id")
                try:
                    record = ExternalRecord.from_odoo(raw)
                    outcome = await engine.upsert(
                        record, survivors.get(record.external_id), synced_at=synced_at
                    )
                except Exception as exc:
                    summary.errors += 1
                    sync_records_total.labels(mode=mode.value, outcome="error").inc()
                    log.error(
                        "upsert.record_failed",
                        external_id=external_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    continue

                warnings.extend(outcome.warnings)
                lead_ids[outcome.external_id] = outcome.lead_id
                if outcome.action == UpsertAction.CREATED:
                    summary.created += 1
                else:
                    summary.updated += 1
                    if outcome.changed:
                        summary.changed += 1
                sync_records_total.labels(mode=mode.value, outcome=outcome.action.value).inc()

            # Reconcile
            self._transition(SyncState.RECONCILING)
            reconciled = await self._reconciler.reconcile(
                mode,
                survivors,
                fetch.external_ids,
                synced_at=synced_at,
                fetch_complete=not fetch.truncated,
            )
            summary.reconciled = reconciled.reconciled_count
            summary.stale = reconciled.stale_count
            summary.drift_count = reconciled.drift_count
            summary.drift = reconciled.drift
            summary.errors += reconciled.errors
            warnings.extend(reconciled.warnings)

            # Persist validation log
            self._transition(SyncState.PERSISTING_LOG)
            summary.validation_summary = summarize_warnings(warnings)
            for warning in warnings:
                sync_validation_warnings_total.labels(severity=warning.severity.value).inc()
            await self._log_writer.persist(
                warnings,
                company_id=self._company_id,
                sync_run_at=run_at,
                lead_ids=lead_ids,
            )

            self._transition(SyncState.DONE)
            summary.state = self.state

        log.info(
            "sync.run_complete",
            total=summary.total,
            created=summary.created,
            updated=summary.updated,
            changed=summary.changed,
            errors=summary.errors,
            reconciled=summary.reconciled,
            dedup_deleted=summary.dedup_deleted,
            dedup_failed=summary.dedup_failed,
            stale=summary.stale,
            fetch_truncated=summary.fetch_truncated,
        )
        return summary

    # ── Reconciliation Run ──────────────────────────────────────────────────

    async def run_reconciliation(self, auto_fix: bool = False) -> ReconciliationReport:
        """Compare every external record in the reconciliation window.

        Raises:
            FetchAbortedError: If the windowed fetch cannot start.
        """
        run_at = self._clock()
        async with track_sync_run("reconciliation"):
            report, warnings = await self._reconciler.report(
                auto_fix=auto_fix,
                now=run_at,
                window_days=self._reconcile_window_days,
                synced_at=run_at.isoformat(),
            )
            await self._log_writer.persist(
                warnings, company_id=self._company_id, sync_run_at=run_at
            )
        return report
