import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine
from app.core.integrations.sql import integration_factory
from app.api.dependencies import run_registry
from app.api.router import api_router

logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Stop background runs and close every engine once the app shuts down
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    yield
    await run_registry.shutdown()
    await integration_factory.dispose()
    await engine.dispose()


app = FastAPI(title="Analysis Query Orchestrator", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Analysis Query Orchestrator API"}
