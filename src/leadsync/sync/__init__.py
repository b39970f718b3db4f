"""Lead sync engine -- mirrors the external CRM pipeline into the internal lead table.

Provides:
- StageTaxonomy / DEFAULT_TAXONOMY: Stage labels, terminal set, transition graph
- validate_record / summarize_warnings / ValidationLogWriter: Data-quality checks
- Deduplicator / pick_survivor: Survivor selection with rollback logging
- UpsertEngine: Per-record create/update with LeadEvents
- Reconciler: Drift detection, stale detection and reconciliation report
- SyncOrchestrator: run_sync(mode) and run_reconciliation(auto_fix)
"""

from src.leadsync.sync.dedup import Deduplicator, pick_survivor, plan_dedup
from src.leadsync.sync.orchestrator import SyncOrchestrator
from src.leadsync.sync.reconcile import Reconciler
from src.leadsync.sync.schemas import SyncMode, SyncState, SyncSummary
from src.leadsync.sync.stages import DEFAULT_TAXONOMY, StageTaxonomy
from src.leadsync.sync.upsert import UpsertEngine
from src.leadsync.sync.validation import (
    ValidationLogWriter,
    summarize_warnings,
    validate_record,
)

__all__ = [
    "DEFAULT_TAXONOMY",
    "Deduplicator",
    "Reconciler",
    "StageTaxonomy",
    "SyncMode",
    "SyncOrchestrator",
    "SyncState",
    "SyncSummary",
    "UpsertEngine",
    "ValidationLogWriter",
    "pick_survivor",
    "plan_dedup",
    "summarize_warnings",
    "validate_record",
]
