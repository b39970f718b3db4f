"""External CRM client interface -- the three read calls the sync engine needs.

The engine is read-only against the external CRM. Implementations raise
ExternalCRMError for any transport or RPC failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

Domain = list[list[Any]]


class ExternalCRMClient(ABC):
    """Abstract interface for paginated reads from the external CRM.

    Methods:
        fetch_count: Number of records matching a domain.
        fetch_page: One page of records matching a domain.
        fetch_by_ids: Records by id; ids missing upstream are absent.
    """

    @abstractmethod
    async def fetch_count(self, domain: Domain) -> int:
        ...

    @abstractmethod
    async def fetch_page(
        self, domain: Domain, fields: list[str], limit: int, offset: int
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_by_ids(self, ids: list[str], fields: list[str]) -> list[dict[str, Any]]:
        ...
