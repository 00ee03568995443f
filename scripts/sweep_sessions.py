#!/usr/bin/env python3
"""Delete expired refresh-token sessions once and exit.

For deployments that run the sweep from cron instead of the in-process
background task (SESSION_CLEANUP_ENABLED=false).

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/sweep_sessions.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Required; the runtime refuses to start without it
    USE_MEMORY_STORE / STATE_DIR: Sweep a snapshotted memory store instead
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep() -> int:
    """Run one sweep and return the number of sessions removed."""
    # Import here so config is read after argument parsing
    from edenauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.cleanup_expired_sessions()
    finally:
        await runtime.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired auth sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not print the number of removed sessions",
    )
    args = parser.parse_args(argv)

    try:
        removed = asyncio.run(sweep())
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not args.quiet:
        print(f"Removed {removed} expired session(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
