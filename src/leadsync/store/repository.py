"""SQLAlchemy-backed LeadStore.

Uses the session_factory callable pattern: every method opens its own
session from an async generator, so one store instance can be shared
across a run and across API requests.

Lead events are inserted with the dialect's ``INSERT ... ON CONFLICT DO
NOTHING`` keyed by dedupe_key (PostgreSQL in production, SQLite in tests).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from src.leadsync.store.base import LeadStore
from src.leadsync.store.models import (
    CustomerModel,
    DedupRollbackLogModel,
    LeadEventModel,
    LeadModel,
    ReconciliationRunModel,
    SyncValidationLogModel,
)
from src.leadsync.sync.schemas import (
    CustomerCreate,
    CustomerRead,
    DedupVictim,
    LeadCreate,
    LeadEventCreate,
    LeadRead,
    LeadUpdate,
    ReconciliationRunCreate,
    ValidationLogCreate,
)

logger = structlog.get_logger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _model_to_lead(model: LeadModel) -> LeadRead:
    """Convert LeadModel to LeadRead schema."""
    return LeadRead(
        id=str(model.id),
        company_id=str(model.company_id),
        external_id=model.external_id,
        title=model.title,
        canonical_stage=model.canonical_stage,
        probability=model.probability,
        expected_value=model.expected_value,
        expected_close_date=model.expected_close_date,
        customer_id=str(model.customer_id) if model.customer_id else None,
        metadata=model.metadata_json or {},
        priority=model.priority,
        source=model.source,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_customer(model: CustomerModel) -> CustomerRead:
    return CustomerRead(
        id=str(model.id),
        name=model.name,
        company_name=model.company_name,
        company_id=str(model.company_id),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SqlLeadStore(LeadStore):
    """Async SQLAlchemy implementation of LeadStore.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Leads ───────────────────────────────────────────────────────────────

    async def list_synced_leads(self, company_id: str) -> list[LeadRead]:
        async for session in self._session_factory():
            stmt = (
                select(LeadModel)
                .where(
                    LeadModel.company_id == uuid.UUID(company_id),
                    LeadModel.external_id.is_not(None),
                )
                .order_by(LeadModel.created_at, LeadModel.id)
            )
            result = await session.execute(stmt)
            return [_model_to_lead(m) for m in result.scalars().all()]

    async def insert_lead(self, data: LeadCreate) -> LeadRead:
        async for session in self._session_factory():
            model = LeadModel(
                company_id=uuid.UUID(data.company_id),
                external_id=data.external_id,
                title=data.title,
                canonical_stage=data.canonical_stage,
                probability=data.probability,
                expected_value=data.expected_value,
                expected_close_date=data.expected_close_date,
                customer_id=_uuid(data.customer_id),
                metadata_json=data.metadata,
                priority=data.priority,
                source=data.source,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_lead(model)

    async def update_lead(self, lead_id: str, data: LeadUpdate) -> None:
        values = data.model_dump(exclude_unset=True)
        if not values:
            return
        if "metadata" in values:
            values["metadata_json"] = values.pop("metadata")
        if "customer_id" in values:
            values["customer_id"] = _uuid(values["customer_id"])

        async for session in self._session_factory():
            stmt = (
                update(LeadModel)
                .where(LeadModel.id == uuid.UUID(lead_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)
            await session.commit()

    async def delete_victims(self, victims: list[DedupVictim]) -> int:
        if not victims:
            return 0
        by_survivor: dict[str, list[uuid.UUID]] = {}
        for victim in victims:
            by_survivor.setdefault(victim.survivor_id, []).append(uuid.UUID(victim.id))

        async for session in self._session_factory():
            moved = 0
            for survivor_id, victim_ids in by_survivor.items():
                repoint = (
                    update(LeadEventModel)
                    .where(LeadEventModel.lead_id.in_(victim_ids))
                    .values(lead_id=uuid.UUID(survivor_id))
                    .execution_options(synchronize_session=False)
                )
                moved += (await session.execute(repoint)).rowcount

            stmt = delete(LeadModel).where(
                LeadModel.id.in_([uuid.UUID(v.id) for v in victims])
            )
            result = await session.execute(stmt)
            await session.commit()
            logger.info(
                "store.leads_deleted", count=result.rowcount, events_repointed=moved
            )
            return result.rowcount

    # ── Customers ───────────────────────────────────────────────────────────

    async def find_customer(self, name: str, company_id: str) -> CustomerRead | None:
        async for session in self._session_factory():
            stmt = (
                select(CustomerModel)
                .where(
                    CustomerModel.company_id == uuid.UUID(company_id),
                    CustomerModel.name == name,
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_customer(model)

    async def create_customer(self, data: CustomerCreate) -> CustomerRead:
        async for session in self._session_factory():
            model = CustomerModel(
                company_id=uuid.UUID(data.company_id),
                name=data.name,
                company_name=data.company_name,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_customer(model)

    # ── Events ──────────────────────────────────────────────────────────────

    async def insert_lead_events(self, events: list[LeadEventCreate]) -> int:
        if not events:
            return 0
        async for session in self._session_factory():
            insert = _INSERT_BY_DIALECT[session.bind.dialect.name]
            inserted = 0
            for event in events:
                stmt = (
                    insert(LeadEventModel)
                    .values(
                        id=uuid.uuid4(),
                        lead_id=uuid.UUID(event.lead_id),
                        event_type=event.event_type.value,
                        payload=event.payload,
                        source_system=event.source_system,
                        dedupe_key=event.dedupe_key,
                    )
                    .on_conflict_do_nothing(index_elements=["dedupe_key"])
                )
                result = await session.execute(stmt)
                inserted += max(result.rowcount, 0)
            await session.commit()
            return inserted

    # ── Audit Logs ──────────────────────────────────────────────────────────

    async def insert_rollback_logs(self, victims: list[DedupVictim]) -> None:
        if not victims:
            return
        async for session in self._session_factory():
            session.add_all(
                [
                    DedupRollbackLogModel(
                        deleted_id=uuid.UUID(v.id),
                        survivor_id=uuid.UUID(v.survivor_id),
                        external_id=v.external_id,
                        pre_merge_snapshot=v.snapshot,
                    )
                    for v in victims
                ]
            )
            await session.commit()

    async def insert_validation_logs(self, rows: list[ValidationLogCreate]) -> None:
        if not rows:
            return
        async for session in self._session_factory():
            session.add_all(
                [
                    SyncValidationLogModel(
                        sync_run_at=row.sync_run_at,
                        company_id=uuid.UUID(row.company_id),
                        external_id=row.external_id,
                        lead_id=_uuid(row.lead_id),
                        severity=row.severity.value,
                        validation_type=row.validation_type,
                        message=row.message,
                        field_name=row.field_name,
                        field_value=row.field_value,
                        auto_fixed=row.auto_fixed,
                        fix_applied=row.fix_applied,
                    )
                    for row in rows
                ]
            )
            await session.commit()

    async def insert_reconciliation_run(self, run: ReconciliationRunCreate) -> str:
        async for session in self._session_factory():
            model = ReconciliationRunModel(
                window_days=run.window_days,
                results=run.results,
                created_count=run.created_count,
                updated_count=run.updated_count,
                missing_count=run.missing_count,
                out_of_sync_count=run.out_of_sync_count,
                duplicate_count=run.duplicate_count,
            )
            session.add(model)
            await session.commit()
            return str(model.id)
