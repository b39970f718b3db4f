"""LeadEvent construction with content-derived dedupe keys.

The dedupe key is a hash of (lead_id, event_type, payload), so replaying
the same diff against the same lead yields the same key and the store's
unique constraint turns the second insert into a no-op.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from src.leadsync.sync.schemas import LeadEventCreate, LeadEventType

RECONCILIATION_SOURCE = "reconciliation"


def dedupe_key(lead_id: str, event_type: LeadEventType, payload: dict[str, Any]) -> str:
    """Stable sha256 hex digest of an event's identity."""
    canonical = json.dumps(payload, sort_keys=True, default=str)
    raw = f"{lead_id}|{event_type.value}|{canonical}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_event(
    lead_id: str,
    event_type: LeadEventType,
    payload: dict[str, Any],
    *,
    source_system: str = "odoo",
) -> LeadEventCreate:
    return LeadEventCreate(
        lead_id=lead_id,
        event_type=event_type,
        payload=payload,
        source_system=source_system,
        dedupe_key=dedupe_key(lead_id, event_type, payload),
    )


def stage_changed(
    lead_id: str, from_stage: str | None, to_stage: str, *, source: str | None = None
) -> LeadEventCreate:
    payload: dict[str, Any] = {"from": from_stage, "to": to_stage}
    if source:
        payload["source"] = source
    return build_event(lead_id, LeadEventType.STAGE_CHANGED, payload)


def value_changed(
    lead_id: str, from_value: float, to_value: float, *, source: str | None = None
) -> LeadEventCreate:
    payload: dict[str, Any] = {"from": from_value, "to": to_value}
    if source:
        payload["source"] = source
    return build_event(lead_id, LeadEventType.VALUE_CHANGED, payload)


def contact_linked(lead_id: str, customer_id: str, customer_name: str) -> LeadEventCreate:
    return build_event(
        lead_id,
        LeadEventType.CONTACT_LINKED,
        {"customer_id": customer_id, "customer_name": customer_name},
    )
