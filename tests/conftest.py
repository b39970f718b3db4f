"""Shared fixtures for the lead sync test suite.

Provides:
- crm: Empty FakeCRMClient
- store: Empty InMemoryLeadStore
- fixed_now: Deterministic run clock (2026-10-19 12:00 UTC)
- orchestrator: SyncOrchestrator wired to crm + store with small batch sizes
"""

from __future__ import annotations

from datetime import datetime

import pytest

from src.leadsync.sync.orchestrator import SyncOrchestrator
from tests.fakes import COMPANY_ID, FIXED_NOW, FakeCRMClient, InMemoryLeadStore



@pytest.fixture
def crm() -> FakeCRMClient:
    return FakeCRMClient()


@pytest.fixture
def store() -> InMemoryLeadStore:
    return InMemoryLeadStore()


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def orchestrator(crm: FakeCRMClient, store: InMemoryLeadStore) -> SyncOrchestrator:
    """Orchestrator with a page size of 2 so paging paths are exercised."""
    return SyncOrchestrator(
        crm,
        store,
        COMPANY_ID,
        page_size=2,
        window_days=5,
        reconcile_batch_size=2,
        reconcile_concurrency=2,
        drift_limit=3,
        clock=lambda: FIXED_NOW,
    )
