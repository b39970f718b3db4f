"""Pydantic schemas for the lead sync engine.

Defines all structured types that flow between components:
- Enums: SyncMode, SyncState, Severity, LeadEventType, UpsertAction,
  ReconciliationStatus
- External side: ExternalRecord (parsed from Odoo search_read rows)
- Internal store payloads: LeadRead/Create/Update, CustomerRead/Create,
  LeadEventCreate, ValidationLogCreate, ReconciliationRunCreate
- Engine results: ValidationWarning, ValidationSummary, DedupVictim,
  DedupResult, UpsertOutcome, DriftEntry, ReconcileResult, SyncSummary,
  ReconciliationRow, ReconciliationSummary, ReconciliationReport
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from src.leadsync.sync.errors import MalformedRecordError


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncMode(str, Enum):
    """Run mode: time-windowed fetch or full ground-truth pass."""

    INCREMENTAL = "incremental"
    FULL = "full"


class SyncState(str, Enum):
    """Orchestrator run states, in pipeline order."""

    PENDING = "pending"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    PROCESSING = "processing"
    RECONCILING = "reconciling"
    PERSISTING_LOG = "persisting_log"
    DONE = "done"
    FAILED = "failed"


class Severity(str, Enum):
    """Validation warning severity."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LeadEventType(str, Enum):
    """Append-only lead event kinds emitted for material changes."""

    STAGE_CHANGED = "stage_changed"
    VALUE_CHANGED = "value_changed"
    CONTACT_LINKED = "contact_linked"


class UpsertAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


class ReconciliationStatus(str, Enum):
    MATCH = "MATCH"
    MISSING_IN_ERP = "MISSING_IN_ERP"
    OUT_OF_SYNC = "OUT_OF_SYNC"
    DUPLICATE = "DUPLICATE"


# ── External Record ─────────────────────────────────────────────────────────


def _many2one_label(value: Any) -> str | None:
    """Odoo many2one fields arrive as ``[id, "Label"]`` or ``False``."""
    if isinstance(value, (list, tuple)):
        return str(value[1]) if len(value) > 1 and value[1] else None
    if value is None or value is False:
        return None
    return str(value)


def _text(value: Any) -> str | None:
    if value is None or value is False:
        return None
    return str(value)


def _number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    return float(value)


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _date(value: Any) -> date | None:
    if not value:
        return None
    return date.fromisoformat(str(value)[:10])


class ExternalRecord(BaseModel):
    """One opportunity as seen in the external CRM (read-only here)."""

    external_id: str = Field(min_length=1)
    title: str = ""
    stage_label: str = ""
    salesperson: str | None = None
    probability: float = 0.0
    expected_revenue: float = 0.0
    contact_name: str | None = None
    partner_name: str | None = None
    email: str | None = None
    phone: str | None = None
    city: str | None = None
    priority: str = "0"
    deal_type: str | None = None
    deadline_date: date | None = None
    write_timestamp: datetime | None = None

    @classmethod
    def from_odoo(cls, row: dict[str, Any]) -> ExternalRecord:
        """Parse one ``search_read`` row.

        Raises:
            MalformedRecordError: If the row has no id or a field cannot be parsed.
        """
        raw_id = row.get("id")
        external_id = None if raw_id in (None, False, "") else str(raw_id)
        if external_id is None:
            raise MalformedRecordError(None, "external row has no id")

        try:
            return cls(
                external_id=external_id,
                title=_text(row.get("name")) or "",
                stage_label=_many2one_label(row.get("stage_id")) or "",
                salesperson=_many2one_label(row.get("user_id")),
                probability=_number(row.get("probability")),
                expected_revenue=_number(row.get("expected_revenue")),
                contact_name=_text(row.get("contact_name")),
                partner_name=_text(row.get("partner_name")),
                email=_text(row.get("email_from")),
                phone=_text(row.get("phone")),
                city=_text(row.get("city")),
                priority=_text(row.get("priority")) or "0",
                deal_type=_text(row.get("type")),
                deadline_date=_date(row.get("date_deadline")),
                write_timestamp=_timestamp(row.get("write_date")),
            )
        except (ValidationError, TypeError, ValueError) as exc:
            raise MalformedRecordError(external_id, f"unparseable external row: {exc}") from exc

    @property
    def customer_name(self) -> str | None:
        """Name used for customer linkage: partner first, then contact."""
        return self.partner_name or self.contact_name or None


# ── Internal Store Payloads ─────────────────────────────────────────────────


class LeadRead(BaseModel):
    """Schema for reading a lead (includes all persisted fields)."""

    id: str
    company_id: str
    external_id: str | None = None
    title: str
    canonical_stage: str = "new"
    probability: int = 0
    expected_value: float = 0.0
    expected_close_date: date | None = None
    customer_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: str = "low"
    source: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def synced_at(self) -> str:
        """Last sync timestamp from metadata, empty string if never synced."""
        value = self.metadata.get("synced_at")
        return str(value) if value else ""


class LeadCreate(BaseModel):
    """Schema for inserting a lead."""

    company_id: str
    external_id: str
    title: str
    canonical_stage: str
    probability: int = Field(ge=0, le=100)
    expected_value: float = 0.0
    expected_close_date: date | None = None
    customer_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: str = "low"
    source: str = "odoo_sync"


class LeadUpdate(BaseModel):
    """Schema for updating a lead; only explicitly set fields are written."""

    title: str | None = None
    canonical_stage: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_value: float | None = None
    expected_close_date: date | None = None
    customer_id: str | None = None
    metadata: dict[str, Any] | None = None


class CustomerRead(BaseModel):
    id: str
    name: str
    company_name: str | None = None
    company_id: str


class CustomerCreate(BaseModel):
    name: str
    company_name: str | None = None
    company_id: str


class LeadEventCreate(BaseModel):
    """Append-only lead event; ``dedupe_key`` is unique in the store."""

    lead_id: str
    event_type: LeadEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    source_system: str = "odoo"
    dedupe_key: str


# ── Validation ──────────────────────────────────────────────────────────────


class ValidationWarning(BaseModel):
    """One data-quality finding. Observational only, never blocks a write."""

    external_id: str
    severity: Severity
    validation_type: str
    message: str
    field_name: str | None = None
    field_value: str | None = None
    auto_fixed: bool = False
    fix_applied: str | None = None
    lead_id: str | None = None


class ValidationSummary(BaseModel):
    """Warning counts by severity plus auto-fixed count."""

    info: int = 0
    warning: int = 0
    error: int = 0
    critical: int = 0
    auto_fixed: int = 0


class ValidationLogCreate(BaseModel):
    """Row persisted to sync_validation_log."""

    sync_run_at: datetime
    company_id: str
    external_id: str
    lead_id: str | None = None
    severity: Severity
    validation_type: str
    message: str
    field_name: str | None = None
    field_value: str | None = None
    auto_fixed: bool = False
    fix_applied: str | None = None


# ── Deduplication ───────────────────────────────────────────────────────────


class DedupVictim(BaseModel):
    """A duplicate lead scheduled for deletion, with its pre-deletion snapshot."""

    id: str
    survivor_id: str
    external_id: str
    snapshot: dict[str, Any]


class DedupResult(BaseModel):
    """Survivor per external id plus the victims scheduled for deletion.

    ``failed`` counts victims left in place because the rollback log or
    their delete batch failed.
    """

    survivors: dict[str, LeadRead] = Field(default_factory=dict)
    victims: list[DedupVictim] = Field(default_factory=list)
    deleted: int = 0
    failed: int = 0


# ── Upsert ──────────────────────────────────────────────────────────────────


class UpsertOutcome(BaseModel):
    action: UpsertAction
    lead_id: str
    external_id: str
    warnings: list[ValidationWarning] = Field(default_factory=list)
    changed: bool = False
    events_emitted: int = 0


# ── Reconciliation ──────────────────────────────────────────────────────────


class DriftEntry(BaseModel):
    """One drifted lead found outside the sync window."""

    external_id: str
    lead_id: str
    diffs: list[str] = Field(default_factory=list)
    from_stage: str | None = None
    to_stage: str | None = None


class ReconcileResult(BaseModel):
    """Outcome of the in-run reconciliation step (incremental drift or full stale scan)."""

    reconciled_count: int = 0
    drift: list[DriftEntry] = Field(default_factory=list)
    drift_count: int = 0
    stale_count: int = 0
    errors: int = 0
    warnings: list[ValidationWarning] = Field(default_factory=list)


class ReconciliationRow(BaseModel):
    """Per-external-record comparison row of a reconciliation report."""

    external_id: str
    lead_ids: list[str] = Field(default_factory=list)
    status: ReconciliationStatus
    diffs: list[str] = Field(default_factory=list)
    action: str = "None"
    external_name: str = ""
    external_stage: str = ""
    internal_stage: str | None = None
    auto_fixable: bool = False
    auto_fixed: bool = False


class ReconciliationSummary(BaseModel):
    total: int = 0
    match: int = 0
    missing: int = 0
    out_of_sync: int = 0
    duplicate: int = 0
    auto_fixed: int = 0
    drift_detected: int = 0
    errors: int = 0


class ReconciliationReport(BaseModel):
    window_days: int
    summary: ReconciliationSummary
    results: list[ReconciliationRow] = Field(default_factory=list)


class ReconciliationRunCreate(BaseModel):
    """Row persisted to reconciliation_runs."""

    window_days: int
    results: list[dict[str, Any]] = Field(default_factory=list)
    created_count: int = 0
    updated_count: int = 0
    missing_count: int = 0
    out_of_sync_count: int = 0
    duplicate_count: int = 0


# ── Run Summary ─────────────────────────────────────────────────────────────


class SyncSummary(BaseModel):
    """Structured result of one sync run; every record lands in a counter."""

    mode: SyncMode
    state: SyncState = SyncState.DONE
    total: int = 0
    created: int = 0
    updated: int = 0
    changed: int = 0
    errors: int = 0
    reconciled: int = 0
    dedup_deleted: int = 0
    dedup_failed: int = 0
    stale: int = 0
    drift_count: int = 0
    drift: list[DriftEntry] = Field(default_factory=list)
    fetch_truncated: bool = False
    validation_summary: ValidationSummary = Field(default_factory=ValidationSummary)
