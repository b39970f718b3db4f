"""Pre-write data-quality validation for external records.

validate_record() is a pure function: it runs a fixed sequence of
independent checks over one external record and returns the warnings it
finds. Checks never short-circuit each other and nothing here raises or
blocks a write. Callers decide whether to act on ``auto_fixed`` hints when
building the write payload.

ValidationLogWriter is the replaceable sink that persists warnings to
sync_validation_log in fixed-size batches.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from src.leadsync.sync.schemas import (
    ExternalRecord,
    Severity,
    ValidationLogCreate,
    ValidationSummary,
    ValidationWarning,
)
from src.leadsync.sync.stages import DEFAULT_TAXONOMY, StageTaxonomy

if TYPE_CHECKING:
    from src.leadsync.store.base import LeadStore

logger = structlog.get_logger(__name__)

# Validation types (persisted verbatim in sync_validation_log.validation_type)
MISSING_FIELD = "missing_field"
ZERO_REVENUE_ADVANCED = "zero_revenue_advanced"
MISSING_CONTACT_ACTIVE = "missing_contact_active"
INVALID_STAGE_TRANSITION = "invalid_stage_transition"
ANOMALY = "anomaly"
DRIFT_DETECTED = "drift_detected"
STALE_LEAD = "stale_lead"

DEFAULT_TITLE = "Untitled"
UNKNOWN_CUSTOMER = "Unknown"


def validate_record(
    record: ExternalRecord,
    stage: str,
    previous_stage: str | None = None,
    *,
    taxonomy: StageTaxonomy = DEFAULT_TAXONOMY,
) -> list[ValidationWarning]:
    """Validate one external record against its computed canonical stage.

    Args:
        record: The external record as fetched.
        stage: Canonical stage computed for this record.
        previous_stage: Canonical stage of the existing internal lead, or
            None if the record is new.
        taxonomy: Stage taxonomy in effect.

    Returns:
        Zero or more ValidationWarnings, one per failed check.
    """
    warnings: list[ValidationWarning] = []
    external_id = record.external_id

    # 1. Required title
    if not record.title.strip():
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.ERROR,
                validation_type=MISSING_FIELD,
                message="Lead has no name/title",
                field_name="name",
                field_value=record.title,
                auto_fixed=True,
                fix_applied=f"Set title to '{DEFAULT_TITLE}'",
            )
        )

    # 2. Unknown stage label
    if not taxonomy.is_known(record.stage_label):
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.WARNING,
                validation_type=MISSING_FIELD,
                message=(
                    f'Unknown external stage "{record.stage_label}" -- '
                    f'defaulting to "{taxonomy.default_stage}"'
                ),
                field_name="stage_id",
                field_value=record.stage_label,
                auto_fixed=True,
                fix_applied=f'Mapped to "{taxonomy.default_stage}"',
            )
        )

    # 3. Zero revenue where revenue is expected
    if record.expected_revenue == 0 and taxonomy.expects_revenue(stage):
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.WARNING,
                validation_type=ZERO_REVENUE_ADVANCED,
                message=f'Zero revenue on stage "{stage}" -- expected a value',
                field_name="expected_revenue",
                field_value="0",
                auto_fixed=False,
            )
        )

    # 4. Missing contact identity on active leads
    if record.customer_name is None and taxonomy.is_active(stage):
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.WARNING,
                validation_type=MISSING_CONTACT_ACTIVE,
                message="Active lead has no partner_name or contact_name",
                field_name="partner_name",
                field_value="",
                auto_fixed=True,
                fix_applied=f'Set customer to "{UNKNOWN_CUSTOMER}"',
            )
        )

    # 5. Transition outside the graph (observational only)
    if previous_stage and taxonomy.is_unusual_transition(previous_stage, stage):
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.INFO,
                validation_type=INVALID_STAGE_TRANSITION,
                message=f"Unusual stage transition: {previous_stage} -> {stage}",
                field_name="stage",
                field_value=f"{previous_stage} -> {stage}",
                auto_fixed=False,
            )
        )

    # 6. Probability anomalies on terminal stages
    probability = record.probability
    if taxonomy.is_won(stage) and probability < 100:
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.INFO,
                validation_type=ANOMALY,
                message=f"Won lead has probability {probability:g}% (expected 100%)",
                field_name="probability",
                field_value=f"{probability:g}",
                auto_fixed=True,
                fix_applied="Normalized to 100%",
            )
        )
    if taxonomy.is_terminal(stage) and not taxonomy.is_won(stage) and probability > 50:
        warnings.append(
            ValidationWarning(
                external_id=external_id,
                severity=Severity.INFO,
                validation_type=ANOMALY,
                message=f'Terminal stage "{stage}" has high probability {probability:g}%',
                field_name="probability",
                field_value=f"{probability:g}",
                auto_fixed=True,
                fix_applied="Normalized to 0%",
            )
        )

    return warnings


def summarize_warnings(warnings: Iterable[ValidationWarning]) -> ValidationSummary:
    """Count warnings by severity plus the number auto-fixed."""
    summary = ValidationSummary()
    for warning in warnings:
        field = warning.severity.value
        setattr(summary, field, getattr(summary, field) + 1)
        if warning.auto_fixed:
            summary.auto_fixed += 1
    return summary


class ValidationLogWriter:
    """Persists warnings to sync_validation_log in batches.

    Validation rows are observational: a failed batch is logged and skipped
    so it can never fail a run.

    Args:
        store: Internal store.
        batch_size: Rows per insert call.
    """

    def __init__(self, store: LeadStore, batch_size: int = 100) -> None:
        self._store = store
        self._batch_size = batch_size

    async def persist(
        self,
        warnings: list[ValidationWarning],
        *,
        company_id: str,
        sync_run_at: datetime,
        lead_ids: dict[str, str] | None = None,
    ) -> int:
        """Write warnings, filling lead_id from ``lead_ids`` (external id -> lead id).

        Returns:
            Number of rows written.
        """
        if not warnings:
            return 0

        lead_ids = lead_ids or {}
        rows = [
            ValidationLogCreate(
                sync_run_at=sync_run_at,
                company_id=company_id,
                external_id=w.external_id,
                lead_id=w.lead_id or lead_ids.get(w.external_id),
                severity=w.severity,
                validation_type=w.validation_type,
                message=w.message,
                field_name=w.field_name,
                field_value=w.field_value,
                auto_fixed=w.auto_fixed,
                fix_applied=w.fix_applied,
            )
            for w in warnings
        ]

        written = 0
        for start in range(0, len(rows), self._batch_size):
            batch = rows[start : start + self._batch_size]
            try:
                await self._store.insert_validation_logs(batch)
                written += len(batch)
            except Exception as exc:
                logger.error(
                    "validation_log.batch_failed",
                    batch_start=start,
                    batch_size=len(batch),
                    error=str(exc),
                )

        logger.info("validation_log.persisted", rows=written, total=len(rows))
        return written
