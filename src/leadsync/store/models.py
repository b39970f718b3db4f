"""Internal store persistence models -- the six tables the sync engine owns or touches.

- LeadModel: Mirrored opportunities (external_id is indexed, NOT unique;
  uniqueness is restored by the dedup pass)
- CustomerModel: Customers linked to active leads, matched by (name, company_id)
- LeadEventModel: Append-only events, unique on dedupe_key
- DedupRollbackLogModel: Snapshot of every lead deleted as a duplicate
- SyncValidationLogModel: Validation warnings per run
- ReconciliationRunModel: One audit row per reconciliation report

Column types are the generic SQLAlchemy ones (Uuid, JSON) so the same
models run on PostgreSQL and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.leadsync.core.database import Base


class CustomerModel(Base):
    """Customer record shared with other modules; created lazily by the sync."""

    __tablename__ = "customers"
    __table_args__ = (Index("ix_customers_company_name", "company_id", "name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class LeadModel(Base):
    """Internal lead mirroring one external opportunity."""

    __tablename__ = "leads"
    __table_args__ = (Index("ix_leads_company_external", "company_id", "external_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    canonical_stage: Mapped[str] = mapped_column(String(64), nullable=False, default="new")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expected_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="low")
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class LeadEventModel(Base):
    """Append-only lead event. Re-inserting the same dedupe_key is a no-op."""

    __tablename__ = "lead_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    source_system: Mapped[str] = mapped_column(String(32), nullable=False, default="odoo")
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DedupRollbackLogModel(Base):
    """Pre-deletion snapshot of a dedup victim; the only way to undo a merge."""

    __tablename__ = "dedup_rollback_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deleted_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    survivor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pre_merge_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SyncValidationLogModel(Base):
    """One validation warning produced during a sync or reconciliation run."""

    __tablename__ = "sync_validation_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sync_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    validation_type: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    field_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_fixed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fix_applied: Mapped[str | None] = mapped_column(Text, nullable=True)


class ReconciliationRunModel(Base):
    """Audit row for one reconciliation report."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    window_days: Mapped[int] = mapped_column(Integer, nullable=False)
    results: Mapped[list] = mapped_column(JSON, default=list)
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    missing_count: Mapped[int] = mapped_column(Integer, default=0)
    out_of_sync_count: Mapped[int] = mapped_column(Integer, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
