"""Search domains and field lists for external CRM reads.

A domain is a list of ``[field, operator, value]`` triples ANDed together.
Every sync domain is restricted to opportunities; incremental runs add a
``write_date`` cutoff.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from src.leadsync.crm.client import Domain

CUTOFF_FORMAT = "%Y-%m-%d %H:%M:%S"

SYNC_FIELDS: list[str] = [
    "id",
    "name",
    "stage_id",
    "email_from",
    "phone",
    "contact_name",
    "user_id",
    "probability",
    "expected_revenue",
    "type",
    "partner_name",
    "city",
    "create_date",
    "write_date",
    "priority",
    "date_deadline",
]

OPPORTUNITY_FILTER: list = ["type", "=", "opportunity"]


def window_cutoff(now: datetime, window_days: int) -> str:
    """``now - window_days`` in the external CRM's datetime format."""
    return (now - timedelta(days=window_days)).strftime(CUTOFF_FORMAT)


def build_window_domain(now: datetime, window_days: int) -> Domain:
    return [list(OPPORTUNITY_FILTER), ["write_date", ">=", window_cutoff(now, window_days)]]


def build_sync_domain(mode: str, now: datetime, window_days: int = 5) -> Domain:
    """Domain for the main fetch of a sync run (``mode`` is incremental or full)."""
    if mode == "incremental":
        return build_window_domain(now, window_days)
    return [list(OPPORTUNITY_FILTER)]
