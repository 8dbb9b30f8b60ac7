import datetime
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Force test config before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["MAINTENANCE_INTERVAL_SECONDS"] = "0"

from app.core.config import Settings, settings
from app.core.database import Base
from app.main import create_app
from app.models.category import Category
from app.models.user import User
from app.services.cache import InMemoryCache
from app.services.container import Services, build_services
from app.services.import_runner import RetryPolicy
from app.services.storage import LocalFileStorage

CSV_HEADER = "title,description,category_id,latitude,longitude,citizen_identifier,priority,status\n"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def session_factory(tmp_path: Path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                Category(id=1, name="Roads"),
                Category(id=2, name="Lighting"),
                Category(id=3, name="Waste"),
                User(id=1, name="Operator One", email="operator@example.com", role="operator"),
            ]
        )
        await session.commit()

    yield factory
    await engine.dispose()


@pytest.fixture()
def test_settings() -> Settings:
    return settings.model_copy(
        update={
            "IMPORT_PROGRESS_EVERY": 3,
            "IDEMPOTENCY_WAIT_SECONDS": 0.3,
            "IDEMPOTENCY_POLL_INTERVAL": 0.02,
            "MAINTENANCE_INTERVAL_SECONDS": 0,
        }
    )


@pytest.fixture()
def storage(tmp_path: Path) -> LocalFileStorage:
    return LocalFileStorage(tmp_path / "uploads")


@pytest.fixture()
def services(test_settings, session_factory, storage) -> Services:
    """Real wiring on SQLite with an in-memory cache and a fast retry policy."""
    return build_services(
        test_settings,
        session_factory,
        cache=InMemoryCache(),
        storage=storage,
        retry_policy=RetryPolicy(max_attempts=3, timeout_seconds=10.0, backoff_seconds=0.0),
    )


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as tc:
        yield tc


def as_user(user_id: int = 1) -> dict[str, str]:
    return {settings.PRINCIPAL_HEADER: str(user_id)}


def write_csv(storage: LocalFileStorage, rows: list[str], key: str = "imports/test.csv") -> str:
    path = storage.path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CSV_HEADER + "".join(row + "\n" for row in rows), encoding="utf-8")
    return key
