"""Tests for drift detection and the reconciliation report.

Tests cover:
- compare_lead field diffs and the auto-fixable rule
- Incremental targeted lookups: healing, stale leads, batch failures counted
  per lead, drift cap
- Full mode stale detection and the truncated-fetch guard
- Report classification, persistence, auto-fix and unparseable rows
"""

from __future__ import annotations

from datetime import date

import pytest

from src.leadsync.sync.errors import FetchAbortedError
from src.leadsync.sync.reconcile import Reconciler, compare_lead, is_auto_fixable
from src.leadsync.sync.schemas import (
    ExternalRecord,
    LeadEventType,
    ReconciliationStatus,
    SyncMode,
)
from src.leadsync.sync.validation import DRIFT_DETECTED, STALE_LEAD
from tests.fakes import (
    COMPANY_ID,
    FIXED_NOW,
    FakeCRMClient,
    InMemoryLeadStore,
    make_lead,
    make_row,
)

SYNCED_AT = FIXED_NOW.isoformat()


def _reconciler(crm: FakeCRMClient, store: InMemoryLeadStore, **kwargs) -> Reconciler:
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("concurrency", 2)
    return Reconciler(crm, store, COMPANY_ID, **kwargs)


def _survivors(*leads) -> dict:
    return {lead.external_id: lead for lead in leads}


# ── Comparison ──────────────────────────────────────────────────────────────


class TestCompareLead:
    """Tests for compare_lead() and is_auto_fixable()."""

    def test_in_sync_lead_has_no_diffs(self):
        lead = make_lead("1", stage="qualified", value=15000.0, customer_id="c")
        record = ExternalRecord.from_odoo(make_row(1))
        assert compare_lead(lead, record) == []

    def test_stage_value_and_deadline_diffs(self):
        lead = make_lead("1", stage="rfi", value=100.0, expected_close_date=date(2026, 11, 1))
        record = ExternalRecord.from_odoo(make_row(1, revenue=250.0, deadline="2026-12-01"))

        diffs = compare_lead(lead, record)

        assert [name for name, _ in diffs] == ["stage", "value", "deadline"]
        assert diffs[0][1] == "stage: rfi → qualified"
        assert diffs[1][1] == "value: 100 → 250"
        assert diffs[2][1] == "deadline: 2026-11-01 → 2026-12-01"
        assert is_auto_fixable(diffs) is True

    def test_customer_check_only_when_requested(self):
        lead = make_lead("1", customer_id=None)
        record = ExternalRecord.from_odoo(make_row(1))

        assert compare_lead(lead, record) == []
        diffs = compare_lead(lead, record, check_customer=True)
        assert diffs == [("customer", "customer_id is null (active lead)")]
        assert is_auto_fixable(diffs) is False

    def test_terminal_lead_without_customer_is_not_flagged(self):
        lead = make_lead("1", stage="won", customer_id=None)
        record = ExternalRecord.from_odoo(make_row(1, stage="Won"))
        assert compare_lead(lead, record, check_customer=True) == []

    def test_empty_diffs_are_not_auto_fixable(self):
        assert is_auto_fixable([]) is False


# ── Incremental ─────────────────────────────────────────────────────────────


class TestIncrementalReconcile:
    """Tests for targeted by-id lookups of leads outside the sync window."""

    async def test_drift_outside_window_is_healed(self):
        lead = make_lead("7", stage="quotation_priority", value=10000.0, customer_id="c")
        store = InMemoryLeadStore([lead])
        crm = FakeCRMClient(
            [make_row(7, stage="Won", probability=90.0, revenue=10001.0, write_date="2026-09-01 00:00:00")]
        )

        result = await _reconciler(crm, store).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), set(), synced_at=SYNCED_AT
        )

        assert result.reconciled_count == 1
        assert result.drift_count == 1
        entry = result.drift[0]
        assert entry.from_stage == "quotation_priority"
        assert entry.to_stage == "won"
        assert entry.diffs == ["stage: quotation_priority → won", "value: 10000 → 10001"]

        healed = store.leads[lead.id]
        assert healed.canonical_stage == "won"
        assert healed.probability == 100
        assert healed.expected_value == 10001.0
        assert healed.metadata["synced_at"] == SYNCED_AT

        payloads = {e.event_type: e.payload for e in store.events_for(lead.id)}
        assert payloads[LeadEventType.STAGE_CHANGED] == {
            "from": "quotation_priority",
            "to": "won",
            "source": "reconciliation",
        }
        assert payloads[LeadEventType.VALUE_CHANGED]["source"] == "reconciliation"

        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.validation_type == DRIFT_DETECTED
        assert warning.auto_fixed is True
        assert warning.lead_id == lead.id

    async def test_fetched_leads_are_not_looked_up(self):
        lead = make_lead("7")
        crm = FakeCRMClient([make_row(7)])

        result = await _reconciler(crm, InMemoryLeadStore([lead])).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), {"7"}, synced_at=SYNCED_AT
        )

        assert crm.by_id_calls == []
        assert result.reconciled_count == 0

    async def test_in_sync_lead_is_left_alone(self):
        lead = make_lead("7", customer_id="c")
        store = InMemoryLeadStore([lead])
        crm = FakeCRMClient([make_row(7)])

        result = await _reconciler(crm, store).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), set(), synced_at=SYNCED_AT
        )

        assert result.reconciled_count == 0
        assert result.warnings == []
        assert store.events == {}

    async def test_missing_upstream_is_reported_stale(self):
        lead = make_lead("99")
        store = InMemoryLeadStore([lead])

        result = await _reconciler(FakeCRMClient(), store).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), set(), synced_at=SYNCED_AT
        )

        assert result.stale_count == 1
        assert result.warnings[0].validation_type == STALE_LEAD
        assert lead.id in store.leads

    async def test_lookups_are_chunked(self):
        leads = [make_lead(str(i), customer_id="c") for i in range(1, 6)]
        crm = FakeCRMClient([make_row(i) for i in range(1, 6)])

        await _reconciler(crm, InMemoryLeadStore(leads), batch_size=2).reconcile(
            SyncMode.INCREMENTAL, _survivors(*leads), set(), synced_at=SYNCED_AT
        )

        assert sorted(len(ids) for ids in crm.by_id_calls) == [1, 2, 2]

    async def test_failed_batch_is_skipped(self):
        leads = [make_lead(str(i), stage="rfi") for i in (1, 2, 3)]
        store = InMemoryLeadStore(leads)
        crm = FakeCRMClient([make_row(i) for i in (1, 2, 3)])
        crm.fail_by_ids_calls = {0}

        result = await _reconciler(crm, store, batch_size=2, concurrency=1).reconcile(
            SyncMode.INCREMENTAL, _survivors(*leads), set(), synced_at=SYNCED_AT
        )

        assert result.reconciled_count == 1
        assert result.stale_count == 0
        assert result.errors == 2
        assert store.leads[leads[0].id].canonical_stage == "rfi"
        assert store.leads[leads[2].id].canonical_stage == "qualified"

    async def test_every_lead_is_accounted_for_when_all_lookups_fail(self):
        leads = [make_lead(str(i), stage="rfi") for i in range(1, 6)]
        crm = FakeCRMClient([make_row(i) for i in range(1, 6)])
        crm.fail_by_ids_calls = {0, 1, 2}

        result = await _reconciler(crm, InMemoryLeadStore(leads), batch_size=2).reconcile(
            SyncMode.INCREMENTAL, _survivors(*leads), set(), synced_at=SYNCED_AT
        )

        assert result.errors == 5
        assert result.errors + result.reconciled_count + result.stale_count == len(leads)

    async def test_non_numeric_external_id_is_reported_stale(self):
        lead = make_lead("legacy-12")
        store = InMemoryLeadStore([lead])

        result = await _reconciler(FakeCRMClient([make_row(12)]), store).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), set(), synced_at=SYNCED_AT
        )

        assert result.stale_count == 1
        assert result.warnings[0].external_id == "legacy-12"

    async def test_drift_list_is_capped(self):
        leads = [make_lead(str(i), stage="rfi") for i in range(1, 5)]
        crm = FakeCRMClient([make_row(i) for i in range(1, 5)])

        result = await _reconciler(crm, InMemoryLeadStore(leads), drift_limit=2).reconcile(
            SyncMode.INCREMENTAL, _survivors(*leads), set(), synced_at=SYNCED_AT
        )

        assert result.drift_count == 4
        assert result.reconciled_count == 4
        assert len(result.drift) == 2

    async def test_failed_heal_is_counted(self):
        lead = make_lead("7", stage="rfi")
        store = InMemoryLeadStore([lead])
        store.fail_update_for = {lead.id}
        crm = FakeCRMClient([make_row(7)])

        result = await _reconciler(crm, store).reconcile(
            SyncMode.INCREMENTAL, _survivors(lead), set(), synced_at=SYNCED_AT
        )

        assert result.errors == 1
        assert result.reconciled_count == 0


# ── Full ────────────────────────────────────────────────────────────────────


class TestFullReconcile:
    """Tests for stale detection after a full fetch."""

    async def test_absent_leads_are_reported_not_deleted(self):
        kept = make_lead("1")
        gone = make_lead("2")
        store = InMemoryLeadStore([kept, gone])
        crm = FakeCRMClient()

        result = await _reconciler(crm, store).reconcile(
            SyncMode.FULL, _survivors(kept, gone), {"1"}, synced_at=SYNCED_AT
        )

        assert result.stale_count == 1
        assert result.warnings[0].external_id == "2"
        assert gone.id in store.leads
        assert crm.by_id_calls == []

    async def test_truncated_fetch_skips_stale_detection(self):
        lead = make_lead("2")

        result = await _reconciler(FakeCRMClient(), InMemoryLeadStore([lead])).reconcile(
            SyncMode.FULL, _survivors(lead), set(), synced_at=SYNCED_AT, fetch_complete=False
        )

        assert result.stale_count == 0
        assert result.warnings == []


# ── Report ──────────────────────────────────────────────────────────────────


def _report_fixture() -> tuple[FakeCRMClient, InMemoryLeadStore, dict[str, str]]:
    match = make_lead("1", customer_id="c")
    dup_a = make_lead("3", customer_id="c")
    dup_b = make_lead("3", customer_id="c")
    drifted = make_lead("4", stage="rfi", customer_id="c")
    unlinked = make_lead("5", customer_id=None)
    store = InMemoryLeadStore([match, dup_a, dup_b, drifted, unlinked])
    crm = FakeCRMClient(
        [
            make_row(1),
            make_row(2),
            make_row(3),
            make_row(4),
            make_row(5),
            make_row(6, write_date="2026-09-01 00:00:00"),
        ]
    )
    return crm, store, {"drifted": drifted.id, "unlinked": unlinked.id}


class TestReport:
    """Tests for Reconciler.report()."""

    async def test_rows_are_classified(self):
        crm, store, _ = _report_fixture()

        report, warnings = await _reconciler(crm, store).report(
            auto_fix=False, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
        )

        statuses = {row.external_id: row.status for row in report.results}
        assert statuses == {
            "1": ReconciliationStatus.MATCH,
            "2": ReconciliationStatus.MISSING_IN_ERP,
            "3": ReconciliationStatus.DUPLICATE,
            "4": ReconciliationStatus.OUT_OF_SYNC,
            "5": ReconciliationStatus.OUT_OF_SYNC,
        }
        summary = report.summary
        assert (summary.total, summary.match, summary.missing) == (5, 1, 1)
        assert (summary.duplicate, summary.out_of_sync, summary.drift_detected) == (1, 2, 2)
        assert summary.auto_fixed == 0
        assert warnings == []

        rows = {row.external_id: row for row in report.results}
        assert rows["2"].action == "Create lead + contact"
        assert rows["3"].action == "Merge duplicates"
        assert len(rows["3"].lead_ids) == 2
        assert rows["4"].auto_fixable is True
        assert rows["5"].auto_fixable is False

    async def test_run_is_persisted(self):
        crm, store, _ = _report_fixture()

        await _reconciler(crm, store).report(
            auto_fix=False, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
        )

        assert len(store.reconciliation_runs) == 1
        run = store.reconciliation_runs[0]
        assert run.window_days == 5
        assert run.missing_count == 1
        assert run.out_of_sync_count == 2
        assert run.duplicate_count == 1
        assert len(run.results) == 5

    async def test_report_without_auto_fix_writes_no_leads(self):
        crm, store, ids = _report_fixture()

        await _reconciler(crm, store).report(
            auto_fix=False, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
        )

        assert store.leads[ids["drifted"]].canonical_stage == "rfi"
        assert store.events == {}

    async def test_auto_fix_patches_safe_rows_only(self):
        crm, store, ids = _report_fixture()

        report, warnings = await _reconciler(crm, store).report(
            auto_fix=True, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
        )

        rows = {row.external_id: row for row in report.results}
        assert rows["4"].auto_fixed is True
        assert rows["5"].auto_fixed is False
        assert report.summary.auto_fixed == 1
        assert store.leads[ids["drifted"]].canonical_stage == "qualified"
        assert store.leads[ids["unlinked"]].customer_id is None

        assert len(warnings) == 1
        assert warnings[0].validation_type == DRIFT_DETECTED
        events = store.events_for(ids["drifted"])
        assert [e.payload["source"] for e in events] == ["reconciliation"]
        assert store.reconciliation_runs[0].updated_count == 1

    async def test_unparseable_row_is_counted(self):
        crm, store, _ = _report_fixture()
        crm.rows.append(make_row(7, probability="not-a-number"))

        report, _ = await _reconciler(crm, store).report(
            auto_fix=False, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
        )

        assert report.summary.errors == 1
        assert report.summary.total == 5
        assert "7" not in {row.external_id for row in report.results}

    async def test_fetch_failure_aborts_report(self):
        crm, store, _ = _report_fixture()
        crm.fail_count = True

        with pytest.raises(FetchAbortedError):
            await _reconciler(crm, store).report(
                auto_fix=False, now=FIXED_NOW, window_days=5, synced_at=SYNCED_AT
            )

        assert store.reconciliation_runs == []
