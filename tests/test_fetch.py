"""Unit tests for fetch_all() pagination."""

from __future__ import annotations

import pytest

from src.leadsync.crm.domain import build_sync_domain, window_cutoff
from src.leadsync.sync.errors import FetchAbortedError
from src.leadsync.sync.fetch import fetch_all
from tests.fakes import FIXED_NOW, FakeCRMClient, make_row

FULL = build_sync_domain("full", FIXED_NOW)


class TestFetchAll:
    """Tests for count-bounded paging, truncation and duplicate handling."""

    async def test_exact_multiple_of_page_size(self):
        crm = FakeCRMClient([make_row(i) for i in range(1, 5)])

        result = await fetch_all(crm, FULL, page_size=2)

        assert result.expected == 4
        assert [row["id"] for row in result.rows] == [1, 2, 3, 4]
        assert crm.page_calls == [(2, 0), (2, 2)]
        assert result.truncated is False

    async def test_zero_count_makes_no_page_calls(self):
        crm = FakeCRMClient()

        result = await fetch_all(crm, FULL, page_size=2)

        assert result.rows == []
        assert crm.page_calls == []

    async def test_later_occurrence_of_duplicate_wins(self):
        crm = FakeCRMClient([make_row(1), make_row(2), make_row(3)])
        crm.extra_on_offset = {2: [make_row(2, name="Second copy")]}

        result = await fetch_all(crm, FULL, page_size=2)

        assert result.duplicates == 1
        assert result.external_ids == {"1", "2", "3"}
        second = next(row for row in result.rows if row["id"] == 2)
        assert second["name"] == "Second copy"

    async def test_rows_without_id_are_kept_last(self):
        crm = FakeCRMClient([make_row(1, id=False), make_row(2)])

        result = await fetch_all(crm, FULL, page_size=5)

        assert [row["id"] for row in result.rows] == [2, False]
        assert result.external_ids == {"2"}

    async def test_later_page_failure_truncates(self):
        crm = FakeCRMClient([make_row(i) for i in range(1, 6)])
        crm.fail_offsets = {4}

        result = await fetch_all(crm, FULL, page_size=2)

        assert result.truncated is True
        assert len(result.rows) == 4

    async def test_count_failure_aborts(self):
        crm = FakeCRMClient([make_row(1)])
        crm.fail_count = True

        with pytest.raises(FetchAbortedError):
            await fetch_all(crm, FULL)

        assert crm.page_calls == []


class TestDomains:
    """Tests for the search domains."""

    def test_window_cutoff_format(self):
        assert window_cutoff(FIXED_NOW, 5) == "2026-10-14 12:00:00"

    def test_incremental_domain(self):
        assert build_sync_domain("incremental", FIXED_NOW, 3) == [
            ["type", "=", "opportunity"],
            ["write_date", ">=", "2026-10-16 12:00:00"],
        ]

    def test_full_domain_is_a_fresh_list(self):
        domain = build_sync_domain("full", FIXED_NOW)
        domain[0].append("mutated")
        assert build_sync_domain("full", FIXED_NOW) == [["type", "=", "opportunity"]]
