import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models.rate_limit import RateLimitPolicy
from app.services.cache import CacheUnavailableError, DatabaseCache, InMemoryCache
from app.services.rate_limiter import DEFAULT_POLICIES, Allowed, Limit, RateLimiter, Throttled


class BrokenCache(InMemoryCache):
    async def increment(self, key, ttl):
        raise CacheUnavailableError("connection refused")


@pytest.fixture()
def limiter(session_factory, clock):
    return RateLimiter(InMemoryCache(clock=clock), session_factory)


async def _add_policy(session_factory, **fields) -> None:
    async with session_factory() as session:
        session.add(RateLimitPolicy(**fields))
        await session.commit()


async def test_allows_max_attempts_then_throttles(session_factory, clock):
    limiter = RateLimiter(
        InMemoryCache(clock=clock),
        session_factory,
        defaults={"login": Limit("login", 3, 3600)},
    )

    decisions = [await limiter.check("login", "ip:10.0.0.1") for _ in range(5)]

    assert [type(d) for d in decisions] == [Allowed, Allowed, Allowed, Throttled, Throttled]
    assert decisions[3].max_attempts == 3
    assert decisions[3].retry_after == 3600


async def test_retry_after_counts_down_and_window_resets(session_factory, clock):
    limiter = RateLimiter(
        InMemoryCache(clock=clock),
        session_factory,
        defaults={"login": Limit("login", 1, 60)},
    )
    assert isinstance(await limiter.check("login", "user:5"), Allowed)

    clock.advance(20.5)
    throttled = await limiter.check("login", "user:5")
    assert isinstance(throttled, Throttled)
    assert throttled.retry_after == 40

    clock.advance(40)
    assert isinstance(await limiter.check("login", "user:5"), Allowed)


async def test_identities_are_counted_separately(session_factory, clock):
    limiter = RateLimiter(
        InMemoryCache(clock=clock),
        session_factory,
        defaults={"login": Limit("login", 1, 60)},
    )
    assert isinstance(await limiter.check("login", "user:1"), Allowed)
    assert isinstance(await limiter.check("login", "user:2"), Allowed)
    assert isinstance(await limiter.check("login", "user:1"), Throttled)


async def test_active_policy_overrides_default(limiter, session_factory):
    await _add_policy(
        session_factory,
        name="csv-import",
        max_attempts=2,
        time_unit="day",
        time_value=1,
    )

    assert await limiter.resolve_limit("csv-import") == Limit("csv-import", 2, 86400)
    assert isinstance(await limiter.check("csv-import", "user:1"), Allowed)
    assert isinstance(await limiter.check("csv-import", "user:1"), Allowed)
    assert isinstance(await limiter.check("csv-import", "user:1"), Throttled)


async def test_inactive_policy_falls_back_to_default(limiter, session_factory):
    await _add_policy(
        session_factory,
        name="api",
        max_attempts=1,
        time_unit="minute",
        time_value=1,
        is_active=False,
    )
    assert await limiter.resolve_limit("api") == DEFAULT_POLICIES["api"]


async def test_unknown_action_is_not_limited(limiter):
    assert await limiter.resolve_limit("no-such-action") is None
    for _ in range(50):
        assert isinstance(await limiter.check("no-such-action", "ip:1.2.3.4"), Allowed)


async def test_counter_backend_down_fails_open(session_factory):
    limiter = RateLimiter(
        BrokenCache(),
        session_factory,
        defaults={"login": Limit("login", 0, 60)},
    )
    assert isinstance(await limiter.check("login", "ip:1.2.3.4"), Allowed)


async def test_policy_table_down_uses_default(tmp_path, clock):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    limiter = RateLimiter(InMemoryCache(clock=clock), async_sessionmaker(bind=engine))
    try:
        assert await limiter.resolve_limit("login") == DEFAULT_POLICIES["login"]
    finally:
        await engine.dispose()


async def test_reset_clears_the_window(session_factory, clock):
    limiter = RateLimiter(
        InMemoryCache(clock=clock),
        session_factory,
        defaults={"login": Limit("login", 1, 3600)},
    )
    await limiter.check("login", "user:9")
    assert isinstance(await limiter.check("login", "user:9"), Throttled)

    assert await limiter.reset("login", "user:9") is True
    assert isinstance(await limiter.check("login", "user:9"), Allowed)


@pytest.mark.parametrize("backend", ["memory", "database"])
async def test_concurrent_checks_allow_exactly_the_limit(session_factory, clock, backend):
    if backend == "memory":
        counters = InMemoryCache(clock=clock)
    else:
        counters = DatabaseCache(session_factory, clock=clock)
    limiter = RateLimiter(
        counters,
        session_factory,
        defaults={"csv-import": Limit("csv-import", 10, 3600)},
    )

    decisions = await asyncio.gather(*(limiter.check("csv-import", "user:1") for _ in range(20)))

    assert sum(isinstance(d, Allowed) for d in decisions) == 10
    assert sum(isinstance(d, Throttled) for d in decisions) == 10
