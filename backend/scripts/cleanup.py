"""
Cleanup script — run the maintenance sweeps once.

Usage:
    python -m scripts.cleanup                      # every sweep
    python -m scripts.cleanup --kind idempotency   # one sweep
    python -m scripts.cleanup --kind cache --kind temp_files

Kinds:
    idempotency      expired idempotency records
    cache            expired cache entries (counters, locks, progress)
    temp_files       uploads older than TEMP_FILE_MAX_AGE_DAYS
    import_history   finished imports older than IMPORT_HISTORY_RETENTION_DAYS

Exits non-zero if any sweep failed.
"""

import argparse
import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.services.container import build_services
from app.services.maintenance import CleanupKind, run_cleanup


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run maintenance sweeps once.")
    parser.add_argument(
        "--kind",
        action="append",
        choices=[kind.value for kind in CleanupKind],
        help="Sweep to run; repeat for several. Default: all.",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    kinds = [CleanupKind(value) for value in args.kind] if args.kind else None

    services = build_services(settings, async_session_factory)
    try:
        removed = await run_cleanup(services, kinds)
    finally:
        await engine.dispose()

    print()
    for kind, count in removed.items():
        outcome = "FAILED" if count < 0 else f"{count} removed"
        print(f"  {kind.value:<16} {outcome}")
    print()

    return 1 if any(count < 0 for count in removed.values()) else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
