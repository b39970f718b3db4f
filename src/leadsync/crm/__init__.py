"""External CRM integration -- read-only client interface and Odoo JSON-RPC backend.

Provides:
- ExternalCRMClient: ABC with fetch_count / fetch_page / fetch_by_ids
- OdooClient: httpx JSON-RPC implementation with tenacity retries
- build_sync_domain / SYNC_FIELDS: Search domain and field list for sync runs
"""

from src.leadsync.crm.client import Domain, ExternalCRMClient
from src.leadsync.crm.domain import SYNC_FIELDS, build_sync_domain, build_window_domain
from src.leadsync.crm.odoo import OdooClient, normalize_base_url

__all__ = [
    "Domain",
    "ExternalCRMClient",
    "OdooClient",
    "SYNC_FIELDS",
    "build_sync_domain",
    "build_window_domain",
    "normalize_base_url",
]
