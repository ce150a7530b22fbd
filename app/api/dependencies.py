from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.analysis.runner import QueryRunner, RunRegistry
from app.core.analysis.store import AnalysisStore
from app.core.config import settings
from app.core.database import get_session_factory
from app.core.integrations.sql import IntegrationFactory, get_integration_factory

# Runs started by this process, shut down with the app
run_registry = RunRegistry()


def get_store(
    session_factory: Annotated[
        async_sessionmaker[AsyncSession], Depends(get_session_factory)
    ],
) -> AnalysisStore:
    return AnalysisStore(session_factory)


def get_runner(store: Annotated[AnalysisStore, Depends(get_store)]) -> QueryRunner:
    return QueryRunner(
        store,
        registry=run_registry,
        poll_interval=settings.QUERY_POLL_INTERVAL_SECONDS,
        poll_timeout=settings.QUERY_POLL_TIMEOUT_SECONDS,
    )


store_dep = Annotated[AnalysisStore, Depends(get_store)]
runner_dep = Annotated[QueryRunner, Depends(get_runner)]
integrations_dep = Annotated[IntegrationFactory, Depends(get_integration_factory)]

# No auth layer: callers name their organization explicitly
organization_dep = Annotated[str, Header(alias="X-Organization", min_length=1)]
