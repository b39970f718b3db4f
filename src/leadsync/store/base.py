"""Internal store interface -- the relational operations the sync engine needs.

Every engine component talks to the internal store through this ABC, so a
run can be exercised against an in-memory implementation in tests and
against SqlLeadStore (async SQLAlchemy) in production.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

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


class LeadStore(ABC):
    """Abstract interface for the internal lead store.

    Methods:
        list_synced_leads: All leads of a company that carry an external id.
        insert_lead: Insert a new lead, return it with its generated id.
        update_lead: Write the explicitly-set fields of a LeadUpdate.
        delete_victims: Re-point victims' events to survivors, then delete them.
        find_customer: Exact lookup by (name, company_id).
        create_customer: Insert a customer.
        insert_lead_events: Append events, ignoring dedupe_key conflicts.
        insert_rollback_logs: Write dedup rollback rows in one transaction.
        insert_validation_logs: Append validation log rows.
        insert_reconciliation_run: Append one reconciliation audit row.
    """

    @abstractmethod
    async def list_synced_leads(self, company_id: str) -> list[LeadRead]:
        """Return every lead of the company with a non-null external_id."""
        ...

    @abstractmethod
    async def insert_lead(self, data: LeadCreate) -> LeadRead:
        ...

    @abstractmethod
    async def update_lead(self, lead_id: str, data: LeadUpdate) -> None:
        """Update only the fields set on ``data`` (model_dump(exclude_unset=True))."""
        ...

    @abstractmethod
    async def delete_victims(self, victims: list[DedupVictim]) -> int:
        """Delete dedup victims, return the number of lead rows removed.

        In the same transaction, every lead event owned by a victim is moved
        to that victim's survivor first, so no event history is lost.
        """
        ...

    @abstractmethod
    async def find_customer(self, name: str, company_id: str) -> CustomerRead | None:
        ...

    @abstractmethod
    async def create_customer(self, data: CustomerCreate) -> CustomerRead:
        ...

    @abstractmethod
    async def insert_lead_events(self, events: list[LeadEventCreate]) -> int:
        """Insert events, skipping any whose dedupe_key already exists.

        Returns:
            Number of rows actually inserted.
        """
        ...

    @abstractmethod
    async def insert_rollback_logs(self, victims: list[DedupVictim]) -> None:
        """Persist all rollback snapshots atomically; raise if any row fails."""
        ...

    @abstractmethod
    async def insert_validation_logs(self, rows: list[ValidationLogCreate]) -> None:
        ...

    @abstractmethod
    async def insert_reconciliation_run(self, run: ReconciliationRunCreate) -> str:
        """Persist one reconciliation run, return its id."""
        ...
