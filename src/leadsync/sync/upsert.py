"""Per-record upsert of external records into the internal lead table.

For each external record the engine canonicalizes the stage, validates,
normalizes probability, resolves the linked customer (active stages only),
then either updates the existing lead for that external id or inserts a
new one. Material changes are emitted as LeadEvents whose dedupe keys make
replays no-ops.

Exceptions propagate to the caller; the orchestrator catches and counts
them per record.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from src.leadsync.sync import events
from src.leadsync.sync.errors import CustomerResolutionError
from src.leadsync.sync.schemas import (
    CustomerCreate,
    ExternalRecord,
    LeadCreate,
    LeadEventCreate,
    LeadRead,
    LeadUpdate,
    UpsertAction,
    UpsertOutcome,
)
from src.leadsync.sync.stages import DEFAULT_TAXONOMY, StageTaxonomy
from src.leadsync.sync.validation import DEFAULT_TITLE, UNKNOWN_CUSTOMER, validate_record

if TYPE_CHECKING:
    from src.leadsync.store.base import LeadStore

logger = structlog.get_logger(__name__)

LEAD_SOURCE = "odoo_sync"
VALUE_TOLERANCE = 0.01

_PRIORITY_MAP = {"3": "high", "2": "medium"}


def map_priority(raw: str | None) -> str:
    """Odoo star priority -> internal low/medium/high."""
    return _PRIORITY_MAP.get(raw or "", "low")


def value_differs(a: float | None, b: float | None) -> bool:
    return abs((a or 0.0) - (b or 0.0)) > VALUE_TOLERANCE


def build_snapshot(record: ExternalRecord, *, synced_at: str, warning_count: int) -> dict[str, Any]:
    """Last-synced external state, stored in lead metadata."""
    return {
        "external_id": record.external_id,
        "external_stage": record.stage_label,
        "salesperson": record.salesperson,
        "email": record.email,
        "phone": record.phone,
        "contact": record.contact_name,
        "probability": record.probability,
        "revenue": record.expected_revenue,
        "partner": record.partner_name,
        "city": record.city,
        "priority": record.priority,
        "type": record.deal_type,
        "deadline": record.deadline_date.isoformat() if record.deadline_date else None,
        "write_date": record.write_timestamp.isoformat() if record.write_timestamp else None,
        "synced_at": synced_at,
        "warning_count": warning_count,
    }


class UpsertEngine:
    """Creates or updates one internal lead per external record.

    One engine instance serves a single run: resolved customers are cached
    by name for the lifetime of the instance.

    Args:
        store: Internal store.
        company_id: Tenant owning the leads and customers.
        taxonomy: Stage taxonomy in effect.
    """

    def __init__(
        self,
        store: LeadStore,
        company_id: str,
        *,
        taxonomy: StageTaxonomy = DEFAULT_TAXONOMY,
    ) -> None:
        self._store = store
        self._company_id = company_id
        self._taxonomy = taxonomy
        self._customer_ids: dict[str, str] = {}

    async def upsert(
        self,
        record: ExternalRecord,
        existing: LeadRead | None,
        *,
        synced_at: str,
    ) -> UpsertOutcome:
        """Upsert one record.

        Args:
            record: The external record.
            existing: Dedup-resolved survivor for this external id, or None.
            synced_at: ISO timestamp of the current run.

        Raises:
            CustomerResolutionError: Active new record without a customer.
        """
        taxonomy = self._taxonomy
        stage = taxonomy.canonicalize(record.stage_label)
        previous_stage = existing.canonical_stage if existing else None
        warnings = validate_record(record, stage, previous_stage, taxonomy=taxonomy)
        probability = taxonomy.normalize_probability(stage, record.probability)

        customer_name = record.customer_name or UNKNOWN_CUSTOMER
        customer_id: str | None = None
        if taxonomy.is_active(stage):
            customer_id = await self._resolve_customer(record, customer_name, existing)

        title = record.title if record.title.strip() else DEFAULT_TITLE
        snapshot = build_snapshot(record, synced_at=synced_at, warning_count=len(warnings))

        if existing is not None:
            outcome = await self._update(
                existing, record, stage, probability, title, snapshot, customer_id, customer_name
            )
        else:
            outcome = await self._create(
                record, stage, probability, title, snapshot, customer_id, customer_name
            )

        outcome.warnings = [w.model_copy(update={"lead_id": outcome.lead_id}) for w in warnings]
        return outcome

    # ── Customer Resolution ─────────────────────────────────────────────────

    async def _resolve_customer(
        self, record: ExternalRecord, name: str, existing: LeadRead | None
    ) -> str | None:
        cached = self._customer_ids.get(name)
        if cached:
            return cached

        try:
            customer = await self._store.find_customer(name, self._company_id)
            if customer is None:
                customer = await self._store.create_customer(
                    CustomerCreate(
                        name=name,
                        company_name=record.partner_name,
                        company_id=self._company_id,
                    )
                )
                logger.debug("upsert.customer_created", customer_id=customer.id, name=name)
        except Exception as exc:
            if existing is None:
                raise CustomerResolutionError(
                    record.external_id, f"cannot resolve customer {name!r}: {exc}"
                ) from exc
            logger.warning(
                "upsert.customer_resolution_failed",
                external_id=record.external_id,
                lead_id=existing.id,
                error=str(exc),
            )
            return None

        self._customer_ids[name] = customer.id
        return customer.id

    # ── Write Paths ─────────────────────────────────────────────────────────

    async def _update(
        self,
        existing: LeadRead,
        record: ExternalRecord,
        stage: str,
        probability: int,
        title: str,
        snapshot: dict[str, Any],
        customer_id: str | None,
        customer_name: str,
    ) -> UpsertOutcome:
        lead_id = existing.id
        pending: list[LeadEventCreate] = []

        if existing.canonical_stage != stage:
            pending.append(events.stage_changed(lead_id, existing.canonical_stage, stage))
        if value_differs(existing.expected_value, record.expected_revenue):
            pending.append(
                events.value_changed(lead_id, existing.expected_value, record.expected_revenue)
            )
        if customer_id and existing.customer_id is None:
            pending.append(events.contact_linked(lead_id, customer_id, customer_name))

        emitted = await self._store.insert_lead_events(pending) if pending else 0

        update = LeadUpdate(
            title=title,
            canonical_stage=stage,
            probability=probability,
            expected_value=record.expected_revenue,
            expected_close_date=record.deadline_date,
            metadata={**existing.metadata, **snapshot},
        )
        if customer_id:
            update.customer_id = customer_id
        await self._store.update_lead(lead_id, update)

        changed = existing.canonical_stage != stage or value_differs(
            existing.expected_value, record.expected_revenue
        )
        if changed:
            logger.info(
                "upsert.lead_changed",
                lead_id=lead_id,
                external_id=record.external_id,
                from_stage=existing.canonical_stage,
                to_stage=stage,
            )

        return UpsertOutcome(
            action=UpsertAction.UPDATED,
            lead_id=lead_id,
            external_id=record.external_id,
            changed=changed,
            events_emitted=emitted,
        )

    async def _create(
        self,
        record: ExternalRecord,
        stage: str,
        probability: int,
        title: str,
        snapshot: dict[str, Any],
        customer_id: str | None,
        customer_name: str,
    ) -> UpsertOutcome:
        lead = await self._store.insert_lead(
            LeadCreate(
                company_id=self._company_id,
                external_id=record.external_id,
                title=title,
                canonical_stage=stage,
                probability=probability,
                expected_value=record.expected_revenue,
                expected_close_date=record.deadline_date,
                customer_id=customer_id,
                metadata=snapshot,
                priority=map_priority(record.priority),
                source=LEAD_SOURCE,
            )
        )

        pending = [events.stage_changed(lead.id, None, stage)]
        if customer_id:
            pending.append(events.contact_linked(lead.id, customer_id, customer_name))
        emitted = await self._store.insert_lead_events(pending)

        logger.info(
            "upsert.lead_created",
            lead_id=lead.id,
            external_id=record.external_id,
            stage=stage,
        )
        return UpsertOutcome(
            action=UpsertAction.CREATED,
            lead_id=lead.id,
            external_id=record.external_id,
            changed=True,
            events_emitted=emitted,
        )
