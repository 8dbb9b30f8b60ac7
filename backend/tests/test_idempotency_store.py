import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from app.models.idempotency import IdempotencyRecord
from app.services.idempotency import IdempotencyStore, IdempotencyStoreUnavailable, StoredResponse


@pytest.fixture()
def store(session_factory, clock):
    return IdempotencyStore(session_factory, clock=clock)


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(IdempotencyRecord))).scalar_one()


async def test_store_then_lookup_returns_identical_bytes(store):
    response = StoredResponse(201, b'{"id":7}', "application/json")
    await store.store("key-1", response, ttl_seconds=3600)

    assert await store.lookup("key-1") == response
    assert await store.lookup("other") is None


async def test_expired_record_is_not_replayed(store, clock):
    await store.store("key-1", StoredResponse(200, b"ok"), ttl_seconds=60)
    clock.advance(61)
    assert await store.lookup("key-1") is None


async def test_store_after_expiry_overwrites(store, clock, session_factory):
    await store.store("key-1", StoredResponse(200, b"first"), ttl_seconds=60)
    clock.advance(61)
    await store.store("key-1", StoredResponse(201, b"second"), ttl_seconds=60)

    stored = await store.lookup("key-1")
    assert stored.status_code == 201
    assert stored.body == b"second"
    assert await _count(session_factory) == 1


async def test_cleanup_removes_expired_then_nothing(store, clock, session_factory):
    for n in range(3):
        await store.store(f"old-{n}", StoredResponse(200, b"x"), ttl_seconds=10)
    await store.store("fresh", StoredResponse(200, b"y"), ttl_seconds=1000)

    clock.advance(11)
    assert await store.cleanup_expired() == 3
    assert await store.cleanup_expired() == 0
    assert await _count(session_factory) == 1


async def test_unreachable_database_raises_unavailable(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    store = IdempotencyStore(async_sessionmaker(bind=engine))
    try:
        with pytest.raises(IdempotencyStoreUnavailable):
            await store.lookup("key-1")
    finally:
        await engine.dispose()
