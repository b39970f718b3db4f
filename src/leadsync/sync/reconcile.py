"""Reconciliation between internal leads and the external CRM.

Three passes share one comparison (stage, value, deadline):

- Incremental: internal leads the sync window did not touch are looked up
  by id in chunks with bounded concurrency. Drift is auto-fixed, emitted as
  ``stage_changed`` / ``value_changed`` events tagged ``source:
  reconciliation`` and logged as a ``drift_detected`` warning. Leads the
  lookup no longer returns are reported as ``stale_lead``. A failed lookup
  counts every lead of its chunk as an error.
- Full: internal leads absent from a complete (untruncated) full fetch are
  reported as ``stale_lead``. Nothing is deleted.
- Report: every external record modified in the reconciliation window is
  classified MATCH / MISSING_IN_ERP / OUT_OF_SYNC / DUPLICATE. With
  auto_fix, rows whose diffs are all in the safe field set are patched.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from src.leadsync.core.monitoring import reconciliation_drift_total
from src.leadsync.crm.domain import SYNC_FIELDS, build_window_domain
from src.leadsync.sync import events
from src.leadsync.sync.fetch import fetch_all
from src.leadsync.sync.schemas import (
    DriftEntry,
    ExternalRecord,
    LeadEventCreate,
    LeadRead,
    LeadUpdate,
    ReconcileResult,
    ReconciliationReport,
    ReconciliationRow,
    ReconciliationRunCreate,
    ReconciliationStatus,
    ReconciliationSummary,
    Severity,
    SyncMode,
    ValidationWarning,
)
from src.leadsync.sync.stages import DEFAULT_TAXONOMY, StageTaxonomy
from src.leadsync.sync.upsert import build_snapshot, value_differs
from src.leadsync.sync.validation import DRIFT_DETECTED, STALE_LEAD

if TYPE_CHECKING:
    from src.leadsync.crm.client import ExternalCRMClient
    from src.leadsync.store.base import LeadStore

logger = structlog.get_logger(__name__)

SAFE_FIELDS = frozenset({"stage", "value", "deadline"})

Diff = tuple[str, str]


# ── Comparison ──────────────────────────────────────────────────────────────


def compare_lead(
    lead: LeadRead,
    record: ExternalRecord,
    *,
    taxonomy: StageTaxonomy = DEFAULT_TAXONOMY,
    check_customer: bool = False,
) -> list[Diff]:
    """Field-level differences between an internal lead and its external record.

    Returns:
        ``(field, description)`` pairs; empty when the lead is in sync.
    """
    expected_stage = taxonomy.canonicalize(record.stage_label)
    diffs: list[Diff] = []

    if lead.canonical_stage != expected_stage:
        diffs.append(("stage", f"stage: {lead.canonical_stage} → {expected_stage}"))
    if value_differs(lead.expected_value, record.expected_revenue):
        diffs.append(("value", f"value: {lead.expected_value:g} → {record.expected_revenue:g}"))
    if lead.expected_close_date != record.deadline_date:
        diffs.append(
            ("deadline", f"deadline: {lead.expected_close_date} → {record.deadline_date}")
        )
    if check_customer and lead.customer_id is None and taxonomy.is_active(expected_stage):
        diffs.append(("customer", "customer_id is null (active lead)"))

    return diffs


def is_auto_fixable(diffs: list[Diff]) -> bool:
    return bool(diffs) and all(name in SAFE_FIELDS for name, _ in diffs)


def _stale_warning(lead: LeadRead) -> ValidationWarning:
    return ValidationWarning(
        external_id=lead.external_id or "",
        lead_id=lead.id,
        severity=Severity.INFO,
        validation_type=STALE_LEAD,
        message="Lead not found in external CRM (deleted upstream or no longer an opportunity)",
        field_name="external_id",
        field_value=lead.external_id,
        auto_fixed=False,
    )


# ── Reconciler ──────────────────────────────────────────────────────────────


class Reconciler:
    """Detects and heals drift between the internal store and the external CRM.

    Args:
        client: External CRM client.
        store: Internal store.
        company_id: Tenant whose leads are reconciled.
        taxonomy: Stage taxonomy in effect.
        batch_size: Ids per targeted lookup.
        concurrency: Targeted lookups in flight at once.
        drift_limit: Maximum drift entries kept in the result.
        page_size: Page size for the report's windowed fetch.
    """

    def __init__(
        self,
        client: ExternalCRMClient,
        store: LeadStore,
        company_id: str,
        *,
        taxonomy: StageTaxonomy = DEFAULT_TAXONOMY,
        batch_size: int = 50,
        concurrency: int = 4,
        drift_limit: int = 50,
        page_size: int = 200,
    ) -> None:
        self._client = client
        self._store = store
        self._company_id = company_id
        self._taxonomy = taxonomy
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._drift_limit = drift_limit
        self._page_size = page_size

    async def reconcile(
        self,
        mode: SyncMode,
        survivors: dict[str, LeadRead],
        fetched_ids: set[str],
        *,
        synced_at: str,
        fetch_complete: bool = True,
    ) -> ReconcileResult:
        """Reconcile the leads the main fetch did not return.

        Args:
            mode: Run mode; full reports stale leads, incremental re-fetches by id.
            survivors: Dedup-resolved leads by external id.
            fetched_ids: External ids returned by the main fetch.
            synced_at: ISO timestamp of the current run.
            fetch_complete: False if the main fetch was truncated.
        """
        untouched = [lead for ext_id, lead in survivors.items() if ext_id not in fetched_ids]

        if mode == SyncMode.FULL:
            if not fetch_complete:
                logger.warning("reconcile.stale_check_skipped", reason="fetch_truncated")
                return ReconcileResult()
            return self.detect_stale(untouched)

        if not untouched:
            return ReconcileResult()
        return await self.reconcile_untouched(untouched, synced_at=synced_at)

    def detect_stale(self, missing: list[LeadRead]) -> ReconcileResult:
        """Report leads absent from a complete full fetch; never deletes."""
        result = ReconcileResult()
        for lead in missing:
            result.warnings.append(_stale_warning(lead))
            result.stale_count += 1
        if result.stale_count:
            logger.info("reconcile.stale_leads", count=result.stale_count)
        return result

    # ── Incremental ─────────────────────────────────────────────────────────

    async def reconcile_untouched(
        self, leads: list[LeadRead], *, synced_at: str
    ) -> ReconcileResult:
        """Targeted by-id lookups for leads outside the sync window."""
        chunks = [
            leads[start : start + self._batch_size]
            for start in range(0, len(leads), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _lookup(chunk: list[LeadRead]) -> list[dict]:
            async with semaphore:
                return await self._client.fetch_by_ids(
                    [lead.external_id for lead in chunk if lead.external_id], SYNC_FIELDS
                )

        fetched = await asyncio.gather(*(_lookup(c) for c in chunks), return_exceptions=True)

        result = ReconcileResult()
        for index, (chunk, rows) in enumerate(zip(chunks, fetched)):
            if isinstance(rows, BaseException):
                logger.error(
                    "reconcile.batch_failed",
                    batch_index=index,
                    external_ids=[lead.external_id for lead in chunk],
                    error=str(rows),
                )
                result.errors += len(chunk)
                continue

            by_id = {str(row.get("id")): row for row in rows}
            for lead in chunk:
                row = by_id.get(lead.external_id or "")
                if row is None:
                    result.warnings.append(_stale_warning(lead))
                    result.stale_count += 1
                    continue
                try:
                    record = ExternalRecord.from_odoo(row)
                    entry = await self._heal(lead, record, synced_at=synced_at)
                except Exception as exc:
                    result.errors += 1
                    logger.error(
                        "reconcile.record_failed",
                        external_id=lead.external_id,
                        lead_id=lead.id,
                        error=str(exc),
                    )
                    continue
                if entry is None:
                    continue

                result.reconciled_count += 1
                result.drift_count += 1
                if len(result.drift) < self._drift_limit:
                    result.drift.append(entry)
                result.warnings.append(self._drift_warning(lead, entry))
                reconciliation_drift_total.labels(source="incremental").inc()

        logger.info(
            "reconcile.incremental_complete",
            checked=len(leads),
            reconciled=result.reconciled_count,
            stale=result.stale_count,
            errors=result.errors,
        )
        return result

    async def _heal(
        self, lead: LeadRead, record: ExternalRecord, *, synced_at: str
    ) -> DriftEntry | None:
        diffs = compare_lead(lead, record, taxonomy=self._taxonomy)
        if not diffs:
            return None

        entry = DriftEntry(
            external_id=record.external_id,
            lead_id=lead.id,
            diffs=[text for _, text in diffs],
            from_stage=lead.canonical_stage,
            to_stage=self._taxonomy.canonicalize(record.stage_label),
        )
        await self._apply_fix(lead, record, diffs, synced_at=synced_at)
        logger.info(
            "reconcile.drift_detected",
            external_id=record.external_id,
            lead_id=lead.id,
            diffs=entry.diffs,
        )
        return entry

    async def _apply_fix(
        self, lead: LeadRead, record: ExternalRecord, diffs: list[Diff], *, synced_at: str
    ) -> None:
        """Patch stage (with its normalized probability), value and deadline."""
        stage = self._taxonomy.canonicalize(record.stage_label)
        fields = {name for name, _ in diffs}

        pending: list[LeadEventCreate] = []
        if "stage" in fields:
            pending.append(
                events.stage_changed(
                    lead.id, lead.canonical_stage, stage, source=events.RECONCILIATION_SOURCE
                )
            )
        if "value" in fields:
            pending.append(
                events.value_changed(
                    lead.id,
                    lead.expected_value,
                    record.expected_revenue,
                    source=events.RECONCILIATION_SOURCE,
                )
            )
        if pending:
            await self._store.insert_lead_events(pending)

        snapshot = build_snapshot(
            record,
            synced_at=synced_at,
            warning_count=int(lead.metadata.get("warning_count") or 0),
        )
        await self._store.update_lead(
            lead.id,
            LeadUpdate(
                canonical_stage=stage,
                probability=self._taxonomy.normalize_probability(stage, record.probability),
                expected_value=record.expected_revenue,
                expected_close_date=record.deadline_date,
                metadata={**lead.metadata, **snapshot},
            ),
        )

    @staticmethod
    def _drift_warning(lead: LeadRead, entry: DriftEntry) -> ValidationWarning:
        return ValidationWarning(
            external_id=entry.external_id,
            lead_id=lead.id,
            severity=Severity.INFO,
            validation_type=DRIFT_DETECTED,
            message=f"Drift detected outside sync window: {'; '.join(entry.diffs)}",
            field_name="stage" if entry.from_stage != entry.to_stage else "expected_value",
            field_value=f"{entry.from_stage} -> {entry.to_stage}",
            auto_fixed=True,
            fix_applied="Synced from external CRM",
        )

    # ── Report ──────────────────────────────────────────────────────────────

    async def report(
        self,
        *,
        auto_fix: bool,
        now: datetime,
        window_days: int = 5,
        synced_at: str,
    ) -> tuple[ReconciliationReport, list[ValidationWarning]]:
        """Classify every external record modified in the window.

        Returns:
            The report plus the drift warnings produced by auto-fixes.

        Raises:
            FetchAbortedError: If the windowed fetch cannot start.
        """
        fetch = await fetch_all(
            self._client, build_window_domain(now, window_days), page_size=self._page_size
        )
        leads = await self._store.list_synced_leads(self._company_id)
        by_external_id: dict[str, list[LeadRead]] = {}
        for lead in leads:
            by_external_id.setdefault(lead.external_id or "", []).append(lead)

        summary = ReconciliationSummary()
        rows: list[ReconciliationRow] = []
        warnings: list[ValidationWarning] = []

        for raw in fetch.rows:
            try:
                record = ExternalRecord.from_odoo(raw)
            except Exception as exc:
                summary.errors += 1
                logger.warning(
                    "reconcile.report_row_skipped", external_id=raw.get("id"), error=str(exc)
                )
                continue

            row = self._classify(record, by_external_id.get(record.external_id, []))
            if auto_fix and row.auto_fixable:
                lead = by_external_id[record.external_id][0]
                try:
                    diffs = compare_lead(lead, record, taxonomy=self._taxonomy)
                    await self._apply_fix(lead, record, diffs, synced_at=synced_at)
                    row.auto_fixed = True
                    summary.auto_fixed += 1
                    reconciliation_drift_total.labels(source="report").inc()
                    entry = DriftEntry(
                        external_id=record.external_id,
                        lead_id=lead.id,
                        diffs=row.diffs,
                        from_stage=lead.canonical_stage,
                        to_stage=self._taxonomy.canonicalize(record.stage_label),
                    )
                    warnings.append(self._drift_warning(lead, entry))
                except Exception as exc:
                    summary.errors += 1
                    logger.error(
                        "reconcile.auto_fix_failed",
                        external_id=record.external_id,
                        lead_id=lead.id,
                        error=str(exc),
                    )

            rows.append(row)
            summary.total += 1
            if row.status == ReconciliationStatus.MATCH:
                summary.match += 1
            elif row.status == ReconciliationStatus.MISSING_IN_ERP:
                summary.missing += 1
            elif row.status == ReconciliationStatus.DUPLICATE:
                summary.duplicate += 1
            else:
                summary.out_of_sync += 1

        summary.drift_detected = summary.out_of_sync
        report = ReconciliationReport(window_days=window_days, summary=summary, results=rows)

        try:
            await self._store.insert_reconciliation_run(
                ReconciliationRunCreate(
                    window_days=window_days,
                    results=[r.model_dump(mode="json") for r in rows],
                    created_count=0,
                    updated_count=summary.auto_fixed,
                    missing_count=summary.missing,
                    out_of_sync_count=summary.out_of_sync,
                    duplicate_count=summary.duplicate,
                )
            )
        except Exception as exc:
            logger.error("reconcile.run_persist_failed", error=str(exc))

        logger.info("reconcile.report_complete", **summary.model_dump())
        return report, warnings

    def _classify(self, record: ExternalRecord, matches: list[LeadRead]) -> ReconciliationRow:
        base = {
            "external_id": record.external_id,
            "external_name": record.title,
            "external_stage": record.stage_label,
        }
        if not matches:
            return ReconciliationRow(
                **base,
                status=ReconciliationStatus.MISSING_IN_ERP,
                diffs=["No internal lead"],
                action="Create lead + contact",
            )
        if len(matches) > 1:
            return ReconciliationRow(
                **base,
                lead_ids=[m.id for m in matches],
                status=ReconciliationStatus.DUPLICATE,
                diffs=[f"{len(matches)} internal leads for the same external id"],
                action="Merge duplicates",
            )

        lead = matches[0]
        diffs = compare_lead(lead, record, taxonomy=self._taxonomy, check_customer=True)
        if not diffs:
            return ReconciliationRow(
                **base,
                lead_ids=[lead.id],
                status=ReconciliationStatus.MATCH,
                internal_stage=lead.canonical_stage,
            )
        return ReconciliationRow(
            **base,
            lead_ids=[lead.id],
            status=ReconciliationStatus.OUT_OF_SYNC,
            diffs=[text for _, text in diffs],
            action="Patch lead fields",
            internal_stage=lead.canonical_stage,
            auto_fixable=is_auto_fixable(diffs),
        )
