#!/usr/bin/env python3
"""CLI script to run a lead sync or reconciliation pass.

Usage:
    uv run python scripts/run_sync.py --mode incremental
    uv run python scripts/run_sync.py --mode full
    uv run python scripts/run_sync.py --reconcile --auto-fix

Connects directly to the database and Odoo using settings from the
environment or .env file, prints the run summary as JSON, and exits with
status 1 if the run fails. Intended for cron / scheduler invocation; the
scheduler must not start overlapping runs for the same company.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.leadsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(mode: str, reconcile: bool, auto_fix: bool) -> int:
    """Run one pass and print its summary. Returns the process exit code."""
    import structlog

    from src.leadsync.api.deps import get_crm_client, get_orchestrator, get_store
    from src.leadsync.core.database import close_db, init_db
    from src.leadsync.core.logging import configure_structlog
    from src.leadsync.sync.errors import LeadSyncError
    from src.leadsync.sync.schemas import SyncMode

    configure_structlog()
    log = structlog.get_logger("scripts.run_sync")
    await init_db()

    orchestrator = await get_orchestrator(await get_crm_client(), await get_store())
    try:
        if reconcile:
            result = await orchestrator.run_reconciliation(auto_fix=auto_fix)
        else:
            result = await orchestrator.run_sync(SyncMode(mode))
    except LeadSyncError as exc:
        log.error("run_sync.failed", mode=mode, reconcile=reconcile, error=str(exc))
        return 1
    finally:
        await close_db()

    print(result.model_dump_json(indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a lead sync or reconciliation pass")
    parser.add_argument(
        "--mode",
        choices=["incremental", "full"],
        default="incremental",
        help="Sync mode (default: incremental)",
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Build the reconciliation report instead of running a sync",
    )
    parser.add_argument(
        "--auto-fix",
        action="store_true",
        help="With --reconcile, patch drift restricted to stage/value/deadline",
    )
    args = parser.parse_args()

    if args.auto_fix and not args.reconcile:
        parser.error("--auto-fix requires --reconcile")

    sys.exit(asyncio.run(run(args.mode, args.reconcile, args.auto_fix)))


if __name__ == "__main__":
    main()
