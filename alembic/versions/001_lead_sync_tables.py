"""Create the lead sync tables.

Revision ID: 001_lead_sync
Revises:
Create Date: 2026-10-19

Creates the six tables used by the sync engine:
- customers: Customers linked to leads, looked up by (company_id, name)
- leads: Mirrored external opportunities (external_id indexed, not unique)
- lead_events: Append-only events, unique on dedupe_key
- dedup_rollback_log: Snapshot of every lead deleted as a duplicate
- sync_validation_log: Validation warnings per run
- reconciliation_runs: One audit row per reconciliation report
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_lead_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── customers table ─────────────────────────────────────────────────

    op.create_table(
        "customers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("company_name", sa.String(300), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_customers_company_name", "customers", ["company_id", "name"])

    # ── leads table ─────────────────────────────────────────────────────

    op.create_table(
        "leads",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(64), nullable=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("canonical_stage", sa.String(64), nullable=False,
                  server_default=sa.text("'new'")),
        sa.Column("probability", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expected_value", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("customer_id", UUID(as_uuid=True),
                  sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("metadata", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False, server_default=sa.text("'low'")),
        sa.Column("source", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("probability BETWEEN 0 AND 100", name="ck_leads_probability"),
    )
    op.create_index("ix_leads_company_external", "leads", ["company_id", "external_id"])

    # ── lead_events table ───────────────────────────────────────────────

    op.create_table(
        "lead_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("lead_id", UUID(as_uuid=True),
                  sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("payload", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("source_system", sa.String(32), nullable=False,
                  server_default=sa.text("'odoo'")),
        sa.Column("dedupe_key", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uq_lead_events_dedupe_key"),
    )
    op.create_index("ix_lead_events_lead_id", "lead_events", ["lead_id"])

    # ── dedup_rollback_log table ────────────────────────────────────────

    op.create_table(
        "dedup_rollback_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("deleted_id", UUID(as_uuid=True), nullable=False),
        sa.Column("survivor_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(64), nullable=True),
        sa.Column("pre_merge_snapshot", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_dedup_rollback_log_survivor_id", "dedup_rollback_log", ["survivor_id"])

    # ── sync_validation_log table ───────────────────────────────────────

    op.create_table(
        "sync_validation_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("sync_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("lead_id", UUID(as_uuid=True), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("validation_type", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=True),
        sa.Column("field_value", sa.Text(), nullable=True),
        sa.Column("auto_fixed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("fix_applied", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_validation_log_company_id", "sync_validation_log", ["company_id"])

    # ── reconciliation_runs table ───────────────────────────────────────

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("gen_random_uuid()")),
        sa.Column("window_days", sa.Integer(), nullable=False),
        sa.Column("results", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("created_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("missing_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("out_of_sync_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("duplicate_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  server_default=sa.text("now()"), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("reconciliation_runs")
    op.drop_table("sync_validation_log")
    op.drop_table("dedup_rollback_log")
    op.drop_table("lead_events")
    op.drop_table("leads")
    op.drop_table("customers")
