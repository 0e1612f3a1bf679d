#!/usr/bin/env python3
"""Run a single lease cleanup pass, for cron or manual maintenance.

Usage:
    DATABASE_URL=postgresql://... python scripts/sweep_once.py

    # Smaller delete batches on a busy database:
    python scripts/sweep_once.py --batch-size 100

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    LEASE_RETENTION_DAYS: Days an ended lease is kept before deletion
    AUDIT_RETENTION_DAYS: Days persisted audit events are kept
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(batch_size: int | None = None) -> dict:
    # Import here to avoid loading config before env vars are set
    from leasekeeper.config import get_settings
    from leasekeeper.service.runtime import build_runtime

    settings = get_settings()
    if batch_size:
        settings = settings.model_copy(update={"sweeper_batch_size": batch_size})
    runtime = build_runtime(settings)
    try:
        report = await asyncio.to_thread(runtime.sweeper.run_once)
    finally:
        await runtime.close()
    return {
        "expired_hard": report.expired_hard,
        "expired_idle": report.expired_idle,
        "purged_leases": report.purged_leases,
        "purged_audit_events": report.purged_audit_events,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Run one lease cleanup pass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows per batch (defaults to SWEEPER_BATCH_SIZE)",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(sweep(args.batch_size))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    for key, value in result.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
