"""In-memory doubles for the external CRM and the internal store.

FakeCRMClient evaluates the small subset of Odoo domains the engine builds
(``=``, ``>=``, ``in``) over a list of raw rows. InMemoryLeadStore keeps
every table in dicts/lists so tests can assert on rows directly. Both
expose switches for failure injection.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from src.leadsync.crm.client import Domain, ExternalCRMClient
from src.leadsync.store.base import LeadStore
from src.leadsync.sync.errors import ExternalCRMError
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

COMPANY_ID = "a0000000-0000-0000-0000-000000000001"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


# ── Row / Lead Factories ────────────────────────────────────────────────────


def make_row(
    odoo_id: int,
    *,
    name: str = "Warehouse rebar package",
    stage: str = "Qualified",
    probability: float = 20.0,
    revenue: float = 15000.0,
    partner: Any = "Acme Builders",
    contact: Any = False,
    write_date: str = "2026-10-18 09:30:00",
    deadline: Any = False,
    **overrides: Any,
) -> dict[str, Any]:
    """Raw ``search_read`` row in Odoo's wire format."""
    row = {
        "id": odoo_id,
        "name": name,
        "stage_id": [odoo_id % 7 + 1, stage],
        "email_from": False,
        "phone": False,
        "contact_name": contact,
        "user_id": [2, "Sam Sales"],
        "probability": probability,
        "expected_revenue": revenue,
        "type": "opportunity",
        "partner_name": partner,
        "city": "Houston",
        "create_date": "2026-01-05 08:00:00",
        "write_date": write_date,
        "priority": "1",
        "date_deadline": deadline,
    }
    row.update(overrides)
    return row


def make_lead(
    external_id: str | None,
    *,
    lead_id: str | None = None,
    stage: str = "qualified",
    value: float = 15000.0,
    synced_at: str | None = "2026-10-10T00:00:00+00:00",
    customer_id: str | None = None,
    **overrides: Any,
) -> LeadRead:
    metadata: dict[str, Any] = {"external_id": external_id}
    if synced_at is not None:
        metadata["synced_at"] = synced_at
    defaults: dict[str, Any] = {
        "id": lead_id or str(uuid.uuid4()),
        "company_id": COMPANY_ID,
        "external_id": external_id,
        "title": f"Lead {external_id}",
        "canonical_stage": stage,
        "probability": 20,
        "expected_value": value,
        "customer_id": customer_id,
        "metadata": metadata,
        "source": "odoo_sync",
    }
    defaults.update(overrides)
    return LeadRead(**defaults)


# ── External CRM ────────────────────────────────────────────────────────────


def _matches(row: dict[str, Any], domain: Domain) -> bool:
    for field, operator, value in domain:
        actual = row.get(field)
        if operator == "=" and actual != value:
            return False
        if operator == ">=" and not (actual and str(actual) >= str(value)):
            return False
        if operator == "in" and actual not in value:
            return False
    return True


class FakeCRMClient(ExternalCRMClient):
    """External CRM backed by a list of raw rows.

    Attributes:
        rows: Current upstream rows.
        count_override: If set, fetch_count returns this instead of the real count.
        fail_count: fetch_count raises.
        fail_offsets: fetch_page raises for these offsets.
        fail_by_ids_calls: fetch_by_ids raises on these call indices (0-based).
        extra_on_offset: Extra rows appended to the page at an offset
            (simulates records shifting while paging).
    """

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = list(rows or [])
        self.count_override: int | None = None
        self.fail_count = False
        self.fail_offsets: set[int] = set()
        self.fail_by_ids_calls: set[int] = set()
        self.extra_on_offset: dict[int, list[dict[str, Any]]] = {}
        self.domains: list[Domain] = []
        self.page_calls: list[tuple[int, int]] = []
        self.by_id_calls: list[list[str]] = []

    async def fetch_count(self, domain: Domain) -> int:
        self.domains.append(domain)
        if self.fail_count:
            raise ExternalCRMError("connection refused", method="search_count")
        if self.count_override is not None:
            return self.count_override
        return sum(1 for row in self.rows if _matches(row, domain))

    async def fetch_page(
        self, domain: Domain, fields: list[str], limit: int, offset: int
    ) -> list[dict[str, Any]]:
        self.page_calls.append((limit, offset))
        if offset in self.fail_offsets:
            raise ExternalCRMError("read timeout", method="search_read")
        matched = [row for row in self.rows if _matches(row, domain)]
        return matched[offset : offset + limit] + self.extra_on_offset.get(offset, [])

    async def fetch_by_ids(self, ids: list[str], fields: list[str]) -> list[dict[str, Any]]:
        call_index = len(self.by_id_calls)
        self.by_id_calls.append(list(ids))
        if call_index in self.fail_by_ids_calls:
            raise ExternalCRMError("read timeout", method="search_read")
        wanted = set(ids)
        return [row for row in self.rows if str(row["id"]) in wanted]


# ── Internal Store ──────────────────────────────────────────────────────────


class InMemoryLeadStore(LeadStore):
    """LeadStore over plain dicts and lists."""

    def __init__(self, leads: list[LeadRead] | None = None) -> None:
        self.leads: dict[str, LeadRead] = {lead.id: lead for lead in leads or []}
        self.customers: dict[str, CustomerRead] = {}
        self.events: dict[str, LeadEventCreate] = {}
        self.rollback_logs: list[DedupVictim] = []
        self.validation_logs: list[ValidationLogCreate] = []
        self.reconciliation_runs: list[ReconciliationRunCreate] = []
        self.delete_calls: list[list[str]] = []
        self.validation_log_calls = 0
        self.fail_rollback_logs = False
        self.fail_delete_calls: set[int] = set()
        self.fail_validation_log_calls: set[int] = set()
        self.fail_customers = False
        self.fail_update_for: set[str] = set()

    # ── Leads ───────────────────────────────────────────────────────────────

    async def list_synced_leads(self, company_id: str) -> list[LeadRead]:
        return [
            lead
            for lead in self.leads.values()
            if lead.company_id == company_id and lead.external_id is not None
        ]

    async def insert_lead(self, data: LeadCreate) -> LeadRead:
        now = datetime.now(timezone.utc)
        lead = LeadRead(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data.model_dump())
        self.leads[lead.id] = lead
        return lead

    async def update_lead(self, lead_id: str, data: LeadUpdate) -> None:
        if lead_id in self.fail_update_for:
            raise RuntimeError("deadlock detected")
        values = data.model_dump(exclude_unset=True)
        self.leads[lead_id] = self.leads[lead_id].model_copy(update=values)

    async def delete_victims(self, victims: list[DedupVictim]) -> int:
        call_index = len(self.delete_calls)
        self.delete_calls.append([v.id for v in victims])
        if call_index in self.fail_delete_calls:
            raise RuntimeError("statement timeout")
        survivor_of = {v.id: v.survivor_id for v in victims}
        for key, event in self.events.items():
            if event.lead_id in survivor_of:
                self.events[key] = event.model_copy(update={"lead_id": survivor_of[event.lead_id]})
        deleted = 0
        for victim in victims:
            if self.leads.pop(victim.id, None) is not None:
                deleted += 1
        return deleted

    # ── Customers ───────────────────────────────────────────────────────────

    async def find_customer(self, name: str, company_id: str) -> CustomerRead | None:
        if self.fail_customers:
            raise RuntimeError("customers table locked")
        for customer in self.customers.values():
            if customer.name == name and customer.company_id == company_id:
                return customer
        return None

    async def create_customer(self, data: CustomerCreate) -> CustomerRead:
        customer = CustomerRead(id=str(uuid.uuid4()), **data.model_dump())
        self.customers[customer.id] = customer
        return customer

    # ── Events / Logs ───────────────────────────────────────────────────────

    async def insert_lead_events(self, events: list[LeadEventCreate]) -> int:
        inserted = 0
        for event in events:
            if event.dedupe_key in self.events:
                continue
            self.events[event.dedupe_key] = event
            inserted += 1
        return inserted

    async def insert_rollback_logs(self, victims: list[DedupVictim]) -> None:
        if self.fail_rollback_logs:
            raise RuntimeError("disk full")
        self.rollback_logs.extend(victims)

    async def insert_validation_logs(self, rows: list[ValidationLogCreate]) -> None:
        call_index = self.validation_log_calls
        self.validation_log_calls += 1
        if call_index in self.fail_validation_log_calls:
            raise RuntimeError("insert failed")
        self.validation_logs.extend(rows)

    async def insert_reconciliation_run(self, run: ReconciliationRunCreate) -> str:
        self.reconciliation_runs.append(run)
        return str(uuid.uuid4())

    # ── Test Helpers ────────────────────────────────────────────────────────

    def by_external_id(self, external_id: str) -> list[LeadRead]:
        return [lead for lead in self.leads.values() if lead.external_id == external_id]

    def events_for(self, lead_id: str) -> list[LeadEventCreate]:
        return [event for event in self.events.values() if event.lead_id == lead_id]
