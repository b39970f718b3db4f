"""Paginated fetch from the external CRM.

Counts matching records first, then pages sequentially until that count is
reached or a short page signals end of data, which bounds pagination even
if the count and the page results disagree.

A failure of the count call or the first page aborts the fetch. A failure
on a later page stops paging and marks the result truncated; whatever was
fetched so far is still returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from src.leadsync.crm.domain import SYNC_FIELDS
from src.leadsync.sync.errors import FetchAbortedError

if TYPE_CHECKING:
    from src.leadsync.crm.client import Domain, ExternalCRMClient

logger = structlog.get_logger(__name__)


@dataclass
class FetchResult:
    """Rows fetched for one run, de-duplicated by external id.

    Attributes:
        rows: Raw rows; a row seen twice keeps its later occurrence.
        expected: Count reported by the external CRM before paging.
        truncated: True if a page after the first failed.
        duplicates: Rows dropped because their id reappeared on a later page.
    """

    rows: list[dict[str, Any]] = field(default_factory=list)
    expected: int = 0
    truncated: bool = False
    duplicates: int = 0

    @property
    def external_ids(self) -> set[str]:
        return {str(row["id"]) for row in self.rows if row.get("id") not in (None, False, "")}


async def fetch_all(
    client: ExternalCRMClient,
    domain: Domain,
    *,
    page_size: int = 200,
    fields: list[str] | None = None,
) -> FetchResult:
    """Fetch every record matching ``domain``.

    Raises:
        FetchAbortedError: If the count call or the first page fails.
    """
    fields = fields or SYNC_FIELDS
    try:
        expected = await client.fetch_count(domain)
    except Exception as exc:
        logger.error("sync.fetch_count_failed", error=str(exc))
        raise FetchAbortedError(f"count call failed: {exc}", method="search_count") from exc

    logger.info("sync.fetch_started", expected=expected, page_size=page_size)

    by_id: dict[str, dict[str, Any]] = {}
    without_id: list[dict[str, Any]] = []
    fetched = 0
    duplicates = 0
    truncated = False
    offset = 0

    while fetched < expected:
        try:
            page = await client.fetch_page(domain, fields, page_size, offset)
        except Exception as exc:
            if offset == 0:
                logger.error("sync.fetch_first_page_failed", error=str(exc))
                raise FetchAbortedError(
                    f"first page failed: {exc}", method="search_read"
                ) from exc
            logger.error("sync.fetch_page_failed", offset=offset, fetched=fetched, error=str(exc))
            truncated = True
            break

        for row in page:
            raw_id = row.get("id")
            if raw_id in (None, False, ""):
                without_id.append(row)
                continue
            key = str(raw_id)
            if key in by_id:
                duplicates += 1
                del by_id[key]
            by_id[key] = row

        fetched += len(page)
        offset += page_size
        logger.debug("sync.fetch_page", offset=offset, rows=len(page), fetched=fetched)

        if len(page) < page_size:
            break

    if duplicates:
        logger.warning("sync.fetch_duplicates_dropped", duplicates=duplicates)

    return FetchResult(
        rows=list(by_id.values()) + without_id,
        expected=expected,
        truncated=truncated,
        duplicates=duplicates,
    )
