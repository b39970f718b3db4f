"""Duplicate resolution for internal leads sharing one external id.

Survivor selection is a generic "pick one" over a total order: the
candidate with the greatest key wins, and on equal keys the first one
encountered is kept. The default order is the ``synced_at`` timestamp
stored in lead metadata (ISO-8601 strings compare chronologically).

Deletion protocol:
1. Snapshot every victim and write all rollback rows in one transaction.
2. Only if that succeeds, delete victims in bounded batches. Each batch
   first re-points the victims' lead events to their survivor, so the
   event history outlives the duplicate row. A failing batch is logged,
   counted in ``failed`` and skipped; the remaining batches still run.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from src.leadsync.core.monitoring import dedup_deleted_total, dedup_failed_total
from src.leadsync.sync.errors import DedupLogWriteError
from src.leadsync.sync.schemas import DedupResult, DedupVictim, LeadRead

if TYPE_CHECKING:
    from src.leadsync.store.base import LeadStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ── Survivor Selection ──────────────────────────────────────────────────────


def pick_survivor(candidates: Sequence[T], key: Callable[[T], Any]) -> tuple[T, list[T]]:
    """Pick the candidate with the greatest key.

    Ties keep the earliest candidate, so the result is deterministic for a
    given input order.

    Returns:
        (survivor, losers) with losers in input order.

    Raises:
        ValueError: If ``candidates`` is empty.
    """
    if not candidates:
        raise ValueError("pick_survivor() needs at least one candidate")

    best_index = 0
    best_key = key(candidates[0])
    for index in range(1, len(candidates)):
        candidate_key = key(candidates[index])
        if candidate_key > best_key:
            best_index, best_key = index, candidate_key

    losers = [c for i, c in enumerate(candidates) if i != best_index]
    return candidates[best_index], losers


def by_synced_at(lead: LeadRead) -> str:
    """Most-recently-synced ordering; a lead never synced sorts first."""
    return lead.synced_at


def plan_dedup(
    leads: Iterable[LeadRead],
    key: Callable[[LeadRead], Any] = by_synced_at,
) -> DedupResult:
    """Group leads by external id and choose one survivor per group.

    Pure: nothing is written or deleted here.
    """
    groups: dict[str, list[LeadRead]] = {}
    for lead in leads:
        if not lead.external_id:
            continue
        groups.setdefault(lead.external_id, []).append(lead)

    result = DedupResult()
    for external_id, group in groups.items():
        survivor, losers = pick_survivor(group, key)
        result.survivors[external_id] = survivor
        for loser in losers:
            result.victims.append(
                DedupVictim(
                    id=loser.id,
                    survivor_id=survivor.id,
                    external_id=external_id,
                    snapshot=loser.model_dump(mode="json"),
                )
            )
    return result


# ── Deduplicator ────────────────────────────────────────────────────────────


class Deduplicator:
    """Applies a dedup plan against the internal store.

    Args:
        store: Internal store.
        delete_batch_size: Maximum ids per delete call.
        key: Survivor ordering; defaults to most-recent synced_at.
    """

    def __init__(
        self,
        store: LeadStore,
        delete_batch_size: int = 50,
        key: Callable[[LeadRead], Any] = by_synced_at,
    ) -> None:
        self._store = store
        self._batch_size = delete_batch_size
        self._key = key

    async def dedupe(self, leads: Iterable[LeadRead]) -> DedupResult:
        """Resolve duplicates among ``leads`` and delete the victims.

        Returns:
            DedupResult whose ``deleted`` counts victims actually removed and
            ``failed`` counts victims left in place.
            Survivors are returned even when no victim could be deleted.
        """
        result = plan_dedup(leads, self._key)
        if not result.victims:
            return result

        logger.info(
            "dedup.duplicates_found",
            external_ids=len({v.external_id for v in result.victims}),
            victims=len(result.victims),
        )

        try:
            await self._write_rollback_logs(result.victims)
        except DedupLogWriteError as exc:
            logger.error("dedup.rollback_log_failed", error=str(exc), victims=len(result.victims))
            result.failed = len(result.victims)
            dedup_failed_total.inc(result.failed)
            return result

        result.deleted, result.failed = await self._delete_victims(result.victims)
        dedup_deleted_total.inc(result.deleted)
        dedup_failed_total.inc(result.failed)
        logger.info(
            "dedup.complete",
            deleted=result.deleted,
            failed=result.failed,
            victims=len(result.victims),
        )
        return result

    async def _write_rollback_logs(self, victims: list[DedupVictim]) -> None:
        try:
            await self._store.insert_rollback_logs(victims)
        except Exception as exc:
            raise DedupLogWriteError(f"rollback log write failed: {exc}") from exc
        for victim in victims:
            logger.debug(
                "dedup.victim_logged",
                lead_id=victim.id,
                survivor_id=victim.survivor_id,
                external_id=victim.external_id,
            )

    async def _delete_victims(self, victims: list[DedupVictim]) -> tuple[int, int]:
        deleted = failed = 0
        for start in range(0, len(victims), self._batch_size):
            batch = victims[start : start + self._batch_size]
            try:
                deleted += await self._store.delete_victims(batch)
            except Exception as exc:
                failed += len(batch)
                logger.error(
                    "dedup.delete_batch_failed",
                    batch_start=start,
                    lead_ids=[v.id for v in batch],
                    error=str(exc),
                )
        return deleted, failed
