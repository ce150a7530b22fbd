import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models
from app.core.errors import AnalysisConflictError
from app.core.schemas import (
    AnalysisRecord,
    AnalysisStatus,
    IN_FLIGHT_ANALYSIS_STATUSES,
    QueryRecord,
    QueryStatus,
)

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# STORE MODULE - Query and Analysis persistence
# Purpose: create/read/update records by id, plus the single-flight insert.
# Every call opens its own short session so concurrent query tasks never
# share one.
# -----------------------------------------------------------------------------


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [getattr(status, "value", status) for status in statuses]


class AnalysisStore:
    """Passive persistence collaborator of the query runner."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # =========================
    # Queries
    # =========================
    async def create_query(
        self,
        organization: str,
        analysis_id: str,
        name: str,
        position: int,
        sql: str,
        started_at: Optional[datetime] = None,
    ) -> QueryRecord:
        async with self.session_factory() as session:
            query = models.Query(
                organization=organization,
                analysis_id=analysis_id,
                name=name,
                position=position,
                sql=sql,
                status=QueryStatus.RUNNING.value,
            )
            if started_at is not None:
                query.started_at = started_at
            session.add(query)
            await session.commit()
            await session.refresh(query)
            return QueryRecord.model_validate(query)

    async def update_query(self, query_id: str, **patch: Any) -> bool:
        """
        Apply a patch to a running query.

        Terminal queries are immutable, so the update only matches rows that
        are still running. Returns False when nothing was written.
        """
        if "status" in patch:
            patch["status"] = getattr(patch["status"], "value", patch["status"])

        stmt = (
            update(models.Query)
            .where(
                models.Query.id == query_id,
                models.Query.status == QueryStatus.RUNNING.value,
            )
            .values(**patch)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def get_query_by_id(self, query_id: str) -> Optional[QueryRecord]:
        async with self.session_factory() as session:
            query = await session.get(models.Query, query_id)
            return QueryRecord.model_validate(query) if query else None

    async def get_queries_by_ids(
        self, ids: List[str], organization: Optional[str] = None
    ) -> List[Optional[QueryRecord]]:
        """Return records in the order of ``ids``; unknown ids map to None."""
        if not ids:
            return []

        stmt = select(models.Query).where(models.Query.id.in_(ids))
        if organization is not None:
            stmt = stmt.where(models.Query.organization == organization)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            found = {
                query.id: QueryRecord.model_validate(query)
                for query in result.scalars().all()
            }

        # Lookup table so we return queries in the same order we received them
        return [found.get(query_id) for query_id in ids]

    async def get_running_queries(self, analysis_id: str) -> List[QueryRecord]:
        stmt = (
            select(models.Query)
            .where(
                models.Query.analysis_id == analysis_id,
                models.Query.status == QueryStatus.RUNNING.value,
            )
            .order_by(models.Query.position)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [QueryRecord.model_validate(q) for q in result.scalars().all()]

    # =========================
    # Analyses
    # =========================
    async def create_analysis_if_absent(
        self,
        organization: str,
        target_key: str,
        kind: str,
        params: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> AnalysisRecord:
        """
        Insert a queued analysis unless one is already in flight for the target.

        The partial unique index on (organization, target_key) makes this a
        single atomic write; losing the race surfaces as an IntegrityError.

        Raises:
            AnalysisConflictError: naming the analysis that is already in flight.
        """
        async with self.session_factory() as session:
            analysis = models.Analysis(
                organization=organization,
                target_key=target_key,
                kind=kind,
                params=params,
                status=AnalysisStatus.QUEUED.value,
                query_ids=[],
            )
            if created_at is not None:
                analysis.created_at = created_at
            session.add(analysis)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._get_in_flight(session, organization, target_key)
                existing_id = existing.id if existing else "unknown"
                logger.info(
                    f"Rejected duplicate analysis for {target_key}, {existing_id} in flight"
                )
                raise AnalysisConflictError(target_key, existing_id)

            await session.refresh(analysis)
            return AnalysisRecord.model_validate(analysis)

    async def update_analysis(
        self,
        analysis_id: str,
        expected_statuses: Optional[Iterable[AnalysisStatus]] = None,
        **patch: Any,
    ) -> bool:
        """
        Patch an analysis, optionally only while it is in one of
        ``expected_statuses``. Returns False when the guard did not match.
        """
        if "status" in patch:
            patch["status"] = getattr(patch["status"], "value", patch["status"])

        stmt = update(models.Analysis).where(models.Analysis.id == analysis_id)
        if expected_statuses is not None:
            stmt = stmt.where(
                models.Analysis.status.in_(_status_values(expected_statuses))
            )
        stmt = stmt.values(**patch)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def get_analysis_by_id(
        self, analysis_id: str, organization: Optional[str] = None
    ) -> Optional[AnalysisRecord]:
        async with self.session_factory() as session:
            analysis = await session.get(models.Analysis, analysis_id)
            if analysis is None:
                return None
            if organization is not None and analysis.organization != organization:
                return None
            return AnalysisRecord.model_validate(analysis)

    async def get_latest_analysis(
        self, organization: str, kind: str, target_key: str
    ) -> Optional[AnalysisRecord]:
        stmt = (
            select(models.Analysis)
            .where(
                models.Analysis.organization == organization,
                models.Analysis.kind == kind,
                models.Analysis.target_key == target_key,
            )
            .order_by(desc(models.Analysis.created_at), desc(models.Analysis.started_at))
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            analysis = result.scalars().first()
            return AnalysisRecord.model_validate(analysis) if analysis else None

    @staticmethod
    async def _get_in_flight(
        session: AsyncSession, organization: str, target_key: str
    ) -> Optional[models.Analysis]:
        stmt = select(models.Analysis).where(
            models.Analysis.organization == organization,
            models.Analysis.target_key == target_key,
            models.Analysis.status.in_(_status_values(IN_FLIGHT_ANALYSIS_STATUSES)),
        )
        result = await session.execute(stmt)
        return result.scalars().first()
