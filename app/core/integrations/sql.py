import logging
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.core.config import settings
from app.core.errors import (
    BuildError,
    DatasourceNotFoundError,
    ExecutionError,
    SubmissionError,
)
from app.core.integrations.base import (
    PollResult,
    Rows,
    SubmitResult,
    compile_sql_template,
)

logger = logging.getLogger(__name__)


def normalize_value(value: Any) -> Any:
    """Make warehouse values JSON friendly so they can be stored as raw results."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.hex()
    return value


class SqlIntegration:
    """
    Synchronous integration for any warehouse reachable through SQLAlchemy.

    Every submission returns its rows directly, so there is never a handle to
    poll or cancel. A result larger than ``max_rows`` fails the query rather
    than being cut short.
    """

    def __init__(self, engine: AsyncEngine, max_rows: int = 10000):
        self.engine = engine
        self.max_rows = max_rows

    async def submit_query(
        self, sql: str, template_vars: Dict[str, Any]
    ) -> SubmitResult:
        rows = await self._fetch(sql, self.max_rows)
        return SubmitResult(rows=rows)

    async def poll_query(self, handle: str) -> PollResult:
        raise ExecutionError(f"Synchronous integration cannot poll handle {handle}")

    async def cancel_query(self, handle: str) -> None:
        # Nothing is ever left running remotely
        logger.debug(f"Ignoring cancel for handle {handle} on synchronous integration")

    async def test_query(
        self,
        query: str,
        template_vars: Optional[Dict[str, Any]] = None,
        limit: int = 5,
    ) -> Dict[str, Any]:
        """
        Run a query wrapped in a LIMIT and report rows and timing.
        Errors are returned in the payload instead of raised.
        """
        start = time.perf_counter()
        sql = query
        try:
            sql = compile_sql_template(query, template_vars or {})
            sql = f"SELECT * FROM ({sql.strip().rstrip(';')}) AS __test LIMIT {int(limit)}"
            results = await self._fetch(sql, limit)
            return {
                "duration": time.perf_counter() - start,
                "results": results,
                "sql": sql,
                "error": None,
            }
        except (BuildError, SubmissionError, ExecutionError) as e:
            return {
                "duration": time.perf_counter() - start,
                "results": [],
                "sql": sql,
                "error": e.message,
            }

    async def _fetch(self, sql: str, max_rows: int) -> Rows:
        try:
            conn = await self.engine.connect()
        except (SQLAlchemyError, OSError) as e:
            raise SubmissionError(f"Could not reach warehouse: {e}")

        try:
            result = await conn.execute(text(sql))
            # One extra row tells a full result apart from a truncated one
            fetched = result.mappings().fetchmany(max_rows + 1)
        except DBAPIError as e:
            raise ExecutionError(str(e.orig))
        except SQLAlchemyError as e:
            raise ExecutionError(str(e))
        finally:
            await conn.close()

        if len(fetched) > max_rows:
            raise ExecutionError(f"Result exceeded {max_rows} rows")

        return [
            {key: normalize_value(value) for key, value in row.items()}
            for row in fetched
        ]


class IntegrationFactory:
    """Resolve a datasource id to an integration, one engine per datasource."""

    def __init__(self, datasources: Dict[str, str], max_rows: int = 10000):
        self.datasources = datasources
        self.max_rows = max_rows
        self._engines: Dict[str, AsyncEngine] = {}

    def get(self, datasource_id: str) -> SqlIntegration:
        url = self.datasources.get(datasource_id)
        if url is None:
            raise DatasourceNotFoundError(datasource_id)

        if datasource_id not in self._engines:
            self._engines[datasource_id] = create_async_engine(url)
        return SqlIntegration(self._engines[datasource_id], max_rows=self.max_rows)

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()


integration_factory = IntegrationFactory(
    settings.DATASOURCES, max_rows=settings.QUERY_MAX_ROWS
)


def get_integration_factory() -> IntegrationFactory:
    return integration_factory
