"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, optionally create the schema,
    start the import workers (re-enqueueing unfinished imports) and the
    maintenance sweep.
  • On shutdown: stop workers and sweep, dispose the engine cleanly.

Routers:
  • /incidents — citizen incident creation (rate limited, idempotent)
  • /imports — CSV bulk import + status polling
  • /health — shallow liveness probe

create_app() takes an optional prebuilt Services so tests can run the
whole stack against SQLite and an in-memory cache.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import Base, async_session_factory, engine
from app.routers.imports import router as imports_router
from app.routers.incidents import router as incidents_router
from app.services.container import Services, build_services
from app.services.maintenance import maintenance_loop

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    if services is None:
        services = build_services(settings, async_session_factory)
    owns_engine = services.session_factory is async_session_factory

    # ── Lifespan ────────────────────────────────────────────
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        """Startup / shutdown lifecycle."""

        # Startup — verify DB is reachable
        db_available = False
        try:
            async with services.session_factory() as session:
                await session.execute(text("SELECT 1"))
            logger.info("Database connection verified ✓")
            db_available = True
        except (SQLAlchemyError, OSError):
            logger.warning(
                "Could not reach the database on startup. "
                "The app will start, but requests will fail until the DB is available."
            )

        if db_available and services.settings.CREATE_SCHEMA_ON_STARTUP:
            async with services.session_factory() as session:
                conn = await session.connection()
                await conn.run_sync(Base.metadata.create_all)
                await session.commit()
            logger.info("Database schema ensured ✓")

        # Startup — background import workers
        await services.import_runner.start(recover=db_available)

        # Startup — periodic cleanup (0 disables it)
        sweeper: asyncio.Task[None] | None = None
        interval = services.settings.MAINTENANCE_INTERVAL_SECONDS
        if interval > 0:
            sweeper = asyncio.create_task(
                maintenance_loop(services, interval),
                name="maintenance",
            )

        yield  # ← application runs here

        # Shutdown — stop background work before the pool goes away
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await services.import_runner.stop()

        if owns_engine:
            await engine.dispose()
            logger.info("Database engine disposed ✓")

    # ── App ─────────────────────────────────────────────────
    app = FastAPI(
        title=services.settings.APP_NAME,
        version="0.1.0",
        description=(
            "Incident reporting API — rate-limited, idempotent incident "
            "creation and background CSV bulk imports."
        ),
        lifespan=lifespan,
    )
    app.state.services = services

    # Mount routers
    app.include_router(incidents_router, prefix="/incidents")
    app.include_router(imports_router, prefix="/imports")

    # ── Health check ────────────────────────────────────────
    @app.get(
        "/health",
        tags=["System"],
        summary="Liveness probe",
    )
    async def health_check() -> dict[str, str]:
        """Shallow health check — confirms the process is alive."""
        return {"status": "healthy"}

    return app


app = create_app()
