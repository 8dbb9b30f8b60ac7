"""
Seed script — install the standard rate limit policies.

Usage:
    python -m scripts.seed_rate_limits

Upserts one row per action into `rate_limits`. Running it again resets
the seeded actions to these values and re-activates them; policies for
other actions are left alone.
"""

import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from app.core.database import async_session_factory, engine, upsert
from app.models.rate_limit import RateLimitPolicy

POLICIES = [
    ("login", 5, "hour", "Login attempts per hour"),
    ("api", 100, "hour", "General API requests per hour"),
    ("incident-creation", 10, "hour", "Incident creation per hour"),
    ("file-upload", 20, "hour", "File uploads per hour"),
    ("csv-import", 5, "day", "CSV imports per day"),
]


async def main() -> None:
    async with async_session_factory() as session:
        for name, max_attempts, time_unit, description in POLICIES:
            stmt = upsert(session, RateLimitPolicy).values(
                name=name,
                max_attempts=max_attempts,
                time_unit=time_unit,
                time_value=1,
                description=description,
                is_active=True,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["name"],
                set_={
                    "max_attempts": stmt.excluded.max_attempts,
                    "time_unit": stmt.excluded.time_unit,
                    "time_value": stmt.excluded.time_value,
                    "description": stmt.excluded.description,
                    "is_active": True,
                },
            )
            await session.execute(stmt)
        await session.commit()

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Rate Limits Seeded")
    print("=" * 60)
    print()
    for name, max_attempts, time_unit, _ in POLICIES:
        print(f"  {name:<20} {max_attempts:>5} per {time_unit}")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
