"""Internal store -- LeadStore interface, SQLAlchemy models and repository.

Provides:
- LeadStore: ABC the sync engine depends on
- SqlLeadStore: Async SQLAlchemy implementation (session_factory pattern)
- Models for leads, customers, lead_events, dedup_rollback_log,
  sync_validation_log and reconciliation_runs
"""

from src.leadsync.store.base import LeadStore
from src.leadsync.store.repository import SqlLeadStore

__all__ = ["LeadStore", "SqlLeadStore"]
