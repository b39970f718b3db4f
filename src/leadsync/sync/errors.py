"""Typed errors for the sync engine.

Transport errors come from the external CRM and are fatal to the page or
batch they occur in. Record errors are scoped to one external record and
are always caught and counted by the orchestrator, never propagated as a
run failure.
"""

from __future__ import annotations


class LeadSyncError(Exception):
    """Base class for all sync engine errors."""


# ── Transport ───────────────────────────────────────────────────────────────


class ExternalCRMError(LeadSyncError):
    """External CRM unreachable or returned an error payload."""

    def __init__(self, message: str, *, model: str | None = None, method: str | None = None) -> None:
        self.model = model
        self.method = method
        super().__init__(message)


class FetchAbortedError(ExternalCRMError):
    """Fetch phase failed before any data was retrieved; the run cannot proceed."""


# ── Record-level ────────────────────────────────────────────────────────────


class RecordError(LeadSyncError):
    """Failure scoped to a single external record."""

    def __init__(self, external_id: str | None, message: str) -> None:
        self.external_id = external_id
        super().__init__(f"[{external_id}] {message}")


class MalformedRecordError(RecordError):
    """External row could not be parsed into an ExternalRecord."""


class CustomerResolutionError(RecordError):
    """An active new record has no resolvable customer and cannot be created."""


# ── Deduplication ───────────────────────────────────────────────────────────


class DedupLogWriteError(LeadSyncError):
    """Rollback snapshots could not be persisted; no duplicate may be deleted."""
