import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from app.core.analysis.store import AnalysisStore
from app.core.config import settings
from app.core.errors import (
    AnalysisNotFoundError,
    BuildError,
    ExecutionError,
    QueryError,
    QueryTimeoutError,
    SubmissionError,
    TransformError,
)
from app.core.integrations.base import (
    Integration,
    PollState,
    Rows,
    SubmitResult,
    compile_sql_template,
)
from app.core.schemas import (
    AnalysisRecord,
    AnalysisStatus,
    IN_FLIGHT_ANALYSIS_STATUSES,
    QueryRecord,
    QueryStatus,
)


# -----------------------------------------------------------------------------
# RUNNER MODULE - Orchestration
# Purpose: build the queries of one analysis, run them concurrently against an
# integration, follow pollable jobs, cancel on demand or on first failure and
# turn the raw rows into the analysis result.
# -----------------------------------------------------------------------------


# Configure logging for the runner
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class QuerySpec:
    """One query produced by a builder. ``sql`` may contain ``{{ var }}`` placeholders."""

    name: str
    sql: str
    template_vars: Dict[str, Any] = field(default_factory=dict)


QueryBuilder = Callable[[Any], Union[QuerySpec, str]]
ResultTransform = Callable[[List[Rows]], Any]


@dataclass
class QueryOutcome:
    query_id: str
    status: QueryStatus
    rows: Optional[Rows] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


# =========================
# Time
# =========================
class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# =========================
# Cancellation
# =========================
class CancelReason(Enum):
    REQUESTED = "requested"  # cancel_analysis was called
    FAIL_FAST = "fail_fast"  # another query of the analysis failed
    SHUTDOWN = "shutdown"


class CancelToken:
    """Cooperative cancellation flag shared by every query task of one run."""

    def __init__(self):
        self._event = asyncio.Event()
        self._settled = asyncio.Event()
        self.reason: Optional[CancelReason] = None
        self.failure: Optional[QueryOutcome] = None

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancelReason) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def fail(self, outcome: QueryOutcome) -> None:
        # First failure wins
        if self.failure is None:
            self.failure = outcome
        self.cancel(CancelReason.FAIL_FAST)

    async def wait(self) -> None:
        await self._event.wait()

    def mark_settled(self) -> None:
        self._settled.set()

    async def wait_settled(self) -> None:
        await self._settled.wait()


class RunRegistry:
    """Runs owned by this process: their cancel tokens and background tasks."""

    def __init__(self):
        self._tokens: Dict[str, CancelToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def register(self, analysis_id: str) -> CancelToken:
        token = CancelToken()
        self._tokens[analysis_id] = token
        return token

    def get(self, analysis_id: str) -> Optional[CancelToken]:
        return self._tokens.get(analysis_id)

    def track(self, analysis_id: str, task: asyncio.Task) -> None:
        self._tasks[analysis_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(analysis_id, None))

    def discard(self, analysis_id: str) -> None:
        self._tokens.pop(analysis_id, None)

    def __contains__(self, analysis_id: str) -> bool:
        return analysis_id in self._tokens

    async def wait(self, analysis_id: str) -> None:
        """Wait for a background run to finish (no-op if it is not running here)."""
        task = self._tasks.get(analysis_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        for token in list(self._tokens.values()):
            token.cancel(CancelReason.SHUTDOWN)

        tasks = list(self._tasks.values())
        if not tasks:
            return

        _, still_running = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)


class AnalysisLogger:
    """Logger scoped to one analysis run."""

    def __init__(self, analysis_id: str, clock: Clock):
        self.analysis_id = analysis_id
        self.clock = clock
        self.start_time = clock.monotonic()

    def log(self, step: str, message: str, level: str = "info"):
        if level == "error":
            logger.error(f"[Analysis {self.analysis_id}] {step}: {message}")
        elif level == "warning":
            logger.warning(f"[Analysis {self.analysis_id}] {step}: {message}")
        else:
            logger.info(f"[Analysis {self.analysis_id}] {step}: {message}")

    def elapsed_seconds(self) -> float:
        return round(self.clock.monotonic() - self.start_time, 3)


def _dump_params(params: Any) -> Optional[Dict[str, Any]]:
    if params is None:
        return None
    if hasattr(params, "model_dump"):
        return params.model_dump(mode="json")
    if isinstance(params, dict):
        return params
    return {"value": str(params)}


def _dump_result(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    return result


# =========================
# Runner
# =========================
class QueryRunner:
    """
    Orchestrates the queries of an analysis.

    The runner holds no request context: the organization and the integration
    are passed to every call, persistence and timing are injected.
    """

    def __init__(
        self,
        store: AnalysisStore,
        registry: Optional[RunRegistry] = None,
        clock: Optional[Clock] = None,
        poll_interval: float = settings.QUERY_POLL_INTERVAL_SECONDS,
        poll_timeout: float = settings.QUERY_POLL_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.registry = registry or RunRegistry()
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------
    def build_queries(
        self, params: Any, query_builders: Sequence[QueryBuilder]
    ) -> List[QuerySpec]:
        """
        Build and compile every query of an analysis.

        Raises:
            BuildError: if a builder fails, returns nothing usable or references
                an unknown template variable.
        """
        if not query_builders:
            raise BuildError("An analysis needs at least one query")

        specs = []
        for position, builder in enumerate(query_builders):
            try:
                spec = builder(params)
            except BuildError:
                raise
            except Exception as e:
                raise BuildError(f"Could not build query {position}: {e}") from e

            if isinstance(spec, str):
                spec = QuerySpec(name=f"query_{position}", sql=spec)
            if not isinstance(spec, QuerySpec) or not spec.sql.strip():
                raise BuildError(f"Query builder {position} returned an empty query")

            specs.append(
                QuerySpec(
                    name=spec.name or f"query_{position}",
                    sql=compile_sql_template(spec.sql, spec.template_vars),
                    template_vars=dict(spec.template_vars),
                )
            )
        return specs

    # -------------------------------------------------------------------------
    # Starting
    # -------------------------------------------------------------------------
    async def start_analysis(
        self,
        organization: str,
        target_key: str,
        params: Any,
        query_builders: Sequence[QueryBuilder],
        result_transform: ResultTransform,
        integration: Integration,
        kind: str = "custom",
        wait: bool = True,
    ) -> AnalysisRecord:
        """
        Start an analysis for ``target_key``.

        With ``wait=True`` the settled record is returned. Otherwise the run
        continues in the background and the running record is returned.

        Raises:
            BuildError: the queries could not be built (nothing persisted).
            AnalysisConflictError: another analysis is in flight for the target.
        """
        specs = self.build_queries(params, query_builders)

        analysis = await self.store.create_analysis_if_absent(
            organization=organization,
            target_key=target_key,
            kind=kind,
            params=_dump_params(params),
            created_at=self.clock.now(),
        )
        run_logger = AnalysisLogger(analysis.id, self.clock)
        run_logger.log("start", f"{kind} analysis for {target_key} with {len(specs)} queries")

        token = self.registry.register(analysis.id)
        try:
            records = []
            for position, spec in enumerate(specs):
                records.append(
                    await self.store.create_query(
                        organization=organization,
                        analysis_id=analysis.id,
                        name=spec.name,
                        position=position,
                        sql=spec.sql,
                        started_at=self.clock.now(),
                    )
                )

            moved = await self.store.update_analysis(
                analysis.id,
                expected_statuses=[AnalysisStatus.QUEUED],
                status=AnalysisStatus.RUNNING,
                query_ids=[record.id for record in records],
                started_at=self.clock.now(),
            )
        except Exception as e:
            self.registry.discard(analysis.id)
            run_logger.log("start", f"Could not create queries: {e}", "error")
            await self._abandon(analysis.id, error=f"Could not create queries: {e}")
            raise

        if not moved:
            # Canceled while still queued
            run_logger.log("start", "Analysis left the queue before submission", "warning")
            for record in records:
                await self.store.update_query(
                    record.id, status=QueryStatus.CANCELED, finished_at=self.clock.now()
                )
            self.registry.discard(analysis.id)
            return await self._reload(analysis.id)

        run = self._run(
            analysis.id, specs, records, integration, result_transform, token, run_logger
        )
        if wait:
            return await run

        task = asyncio.create_task(run)
        self.registry.track(analysis.id, task)
        return await self._reload(analysis.id)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------
    async def _run(
        self,
        analysis_id: str,
        specs: List[QuerySpec],
        records: List[QueryRecord],
        integration: Integration,
        result_transform: ResultTransform,
        token: CancelToken,
        run_logger: AnalysisLogger,
    ) -> AnalysisRecord:
        tasks = [
            asyncio.create_task(
                self._execute_query(record, spec, integration, token, run_logger)
            )
            for record, spec in zip(records, specs)
        ]

        try:
            await asyncio.wait(tasks)
            outcomes = [task.result() for task in tasks]
            return await self._settle_analysis(
                analysis_id, outcomes, result_transform, integration, token, run_logger
            )

        except asyncio.CancelledError:
            token.cancel(CancelReason.SHUTDOWN)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            run_logger.log("run", "Run interrupted, marking analysis canceled", "warning")
            await self._abandon(analysis_id)
            raise

        except Exception as e:
            # Store or integration bug; never leave the analysis running
            token.cancel(CancelReason.SHUTDOWN)
            await asyncio.gather(*tasks, return_exceptions=True)
            run_logger.log("run", f"Run crashed: {e}", "error")
            await self._abandon(analysis_id, error=f"Internal error while running analysis: {e}")
            return await self._reload(analysis_id)

        finally:
            self.registry.discard(analysis_id)

    async def _settle_analysis(
        self,
        analysis_id: str,
        outcomes: List[QueryOutcome],
        result_transform: ResultTransform,
        integration: Integration,
        token: CancelToken,
        run_logger: AnalysisLogger,
    ) -> AnalysisRecord:
        if token.reason == CancelReason.REQUESTED:
            # cancel_analysis owns the final transition
            await token.wait_settled()
            analysis = await self._reload(analysis_id)
            if not analysis.is_terminal:
                run_logger.log("finish", "Cancel did not complete, closing the analysis", "warning")
                await self._close_canceled(analysis_id, integration)
                analysis = await self._reload(analysis_id)
            run_logger.log("finish", f"Canceled after {run_logger.elapsed_seconds()}s")
            return analysis

        if token.failure is not None:
            run_logger.log(
                "finish", f"Failed: {token.failure.error}", "error"
            )
            await self._finish(
                analysis_id, AnalysisStatus.ERROR, error=token.failure.error
            )
            return await self._reload(analysis_id)

        if any(outcome.status != QueryStatus.SUCCEEDED for outcome in outcomes):
            run_logger.log("finish", "Not every query succeeded, analysis canceled", "warning")
            await self._finish(analysis_id, AnalysisStatus.CANCELED)
            return await self._reload(analysis_id)

        try:
            result = _dump_result(result_transform([outcome.rows for outcome in outcomes]))
        except TransformError as e:
            error = e.message
        except Exception as e:
            error = TransformError(f"Could not aggregate results: {e}").message
        else:
            await self._finish(analysis_id, AnalysisStatus.SUCCESS, result=result)
            run_logger.log("finish", f"Succeeded in {run_logger.elapsed_seconds()}s")
            return await self._reload(analysis_id)

        run_logger.log("transform", error, "error")
        await self._finish(analysis_id, AnalysisStatus.ERROR, error=error)
        return await self._reload(analysis_id)

    async def _execute_query(
        self,
        record: QueryRecord,
        spec: QuerySpec,
        integration: Integration,
        token: CancelToken,
        run_logger: AnalysisLogger,
    ) -> QueryOutcome:
        if token.is_canceled:
            return await self._stop_query(record, None, integration, token)

        try:
            submitted = await self._submit(spec, integration, token)
        except QueryError as e:
            return await self._fail_query(record, e, token, run_logger)
        except Exception as e:
            return await self._fail_query(
                record, SubmissionError(f"Could not submit query: {e}"), token, run_logger
            )

        if submitted is None:
            run_logger.log("query", f"Query {spec.name} interrupted while running", "warning")
            return await self._stop_query(record, None, integration, token)
        if token.is_canceled:
            return await self._stop_query(record, submitted.handle, integration, token)

        if not submitted.is_pollable:
            return await self._complete_query(record, submitted.rows or [])

        await self.store.update_query(record.id, external_handle=submitted.handle)
        if token.is_canceled:
            # A canceller may have read the query before the handle was stored
            return await self._stop_query(record, submitted.handle, integration, token)

        run_logger.log("poll", f"Query {spec.name} submitted as {submitted.handle}")
        return await self._poll_until_settled(
            record, submitted.handle, integration, token, run_logger
        )

    async def _submit(
        self, spec: QuerySpec, integration: Integration, token: CancelToken
    ) -> Optional[SubmitResult]:
        """
        Submit a query, giving up as soon as the run is canceled.

        Returns None when the submission was interrupted. Synchronous
        warehouses run the whole query inside the submission, so interrupting
        it closes the connection and stops the query.
        """
        submission = asyncio.ensure_future(
            integration.submit_query(spec.sql, spec.template_vars)
        )
        canceled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({submission, canceled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            canceled.cancel()
            if not submission.done():
                submission.cancel()
                await asyncio.gather(submission, return_exceptions=True)

        if submission.cancelled():
            return None
        return submission.result()

    async def _poll_until_settled(
        self,
        record: QueryRecord,
        handle: str,
        integration: Integration,
        token: CancelToken,
        run_logger: AnalysisLogger,
    ) -> QueryOutcome:
        deadline = self.clock.monotonic() + self.poll_timeout

        while True:
            if token.is_canceled:
                # A requested cancel reaches the warehouse through cancel_analysis
                owner = None if token.reason == CancelReason.REQUESTED else integration
                return await self._stop_query(record, handle, owner, token)

            try:
                polled = await integration.poll_query(handle)
            except QueryError as e:
                return await self._fail_query(record, e, token, run_logger)
            except Exception as e:
                return await self._fail_query(
                    record, ExecutionError(f"Could not poll query: {e}"), token, run_logger
                )

            if polled.state == PollState.SUCCEEDED:
                return await self._complete_query(record, polled.rows or [])
            if polled.state == PollState.FAILED:
                return await self._fail_query(
                    record,
                    ExecutionError(polled.error or "Query failed in the warehouse"),
                    token,
                    run_logger,
                )

            if self.clock.monotonic() >= deadline:
                error = QueryTimeoutError(
                    f"Query {record.name} did not finish within {self.poll_timeout:g} seconds"
                )
                outcome = QueryOutcome(
                    record.id, QueryStatus.FAILED, error=error.message, error_kind=error.kind
                )
                token.fail(outcome)
                run_logger.log("poll", error.message, "error")
                await self.cancel_query(
                    record.id,
                    integration,
                    handle=handle,
                    status=QueryStatus.FAILED,
                    error=error.message,
                    error_kind=error.kind,
                )
                return outcome

            await self._pause(token)

    async def _pause(self, token: CancelToken) -> None:
        """Sleep one poll interval, waking early if the run is canceled."""
        sleeper = asyncio.ensure_future(self.clock.sleep(self.poll_interval))
        canceled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({sleeper, canceled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            canceled.cancel()

    async def _complete_query(self, record: QueryRecord, rows: Rows) -> QueryOutcome:
        written = await self.store.update_query(
            record.id,
            status=QueryStatus.SUCCEEDED,
            raw_result=rows,
            finished_at=self.clock.now(),
        )
        if not written:
            return await self._current_outcome(record.id)
        return QueryOutcome(record.id, QueryStatus.SUCCEEDED, rows=rows)

    async def _fail_query(
        self,
        record: QueryRecord,
        error: QueryError,
        token: CancelToken,
        run_logger: AnalysisLogger,
    ) -> QueryOutcome:
        outcome = QueryOutcome(
            record.id, QueryStatus.FAILED, error=error.message, error_kind=error.kind
        )
        if token.is_canceled and token.reason != CancelReason.FAIL_FAST:
            # Failure while the run is being canceled for another reason
            return await self._stop_query(record, None, None, token)

        token.fail(outcome)
        run_logger.log("query", f"Query {record.name} failed: {error.message}", "error")
        written = await self.store.update_query(
            record.id,
            status=QueryStatus.FAILED,
            error=error.message,
            error_kind=error.kind,
            finished_at=self.clock.now(),
        )
        if not written:
            return await self._current_outcome(record.id)
        return outcome

    async def _stop_query(
        self,
        record: QueryRecord,
        handle: Optional[str],
        integration: Optional[Integration],
        token: CancelToken,
    ) -> QueryOutcome:
        """Leave a query because its run was canceled."""
        if handle and integration is not None:
            # The handle may not be persisted yet, so the canceller cannot know it
            await self._request_external_cancel(integration, handle)

        if token.reason == CancelReason.REQUESTED:
            # cancel_analysis writes the record after reaching the warehouse
            return QueryOutcome(record.id, QueryStatus.CANCELED)

        await self.store.update_query(
            record.id, status=QueryStatus.CANCELED, finished_at=self.clock.now()
        )
        return await self._current_outcome(record.id)

    async def _current_outcome(self, query_id: str) -> QueryOutcome:
        current = await self.store.get_query_by_id(query_id)
        return QueryOutcome(
            query_id,
            current.status,
            rows=current.raw_result,
            error=current.error,
            error_kind=current.error_kind,
        )

    # -------------------------------------------------------------------------
    # Cancelling
    # -------------------------------------------------------------------------
    async def cancel_query(
        self,
        query_id: str,
        integration: Optional[Integration],
        handle: Optional[str] = None,
        status: QueryStatus = QueryStatus.CANCELED,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> bool:
        """
        Cancel one query: ask the warehouse to stop it, then record the
        terminal status. A query that is already terminal is left untouched.
        Without an integration only the local record is written.

        Returns True if this call wrote the terminal status.
        """
        record = await self.store.get_query_by_id(query_id)
        if record is None or record.is_terminal:
            return False

        handle = handle or record.external_handle
        if handle and integration is not None:
            await self._request_external_cancel(integration, handle)
        elif handle:
            logger.warning(
                f"No integration to cancel external query {handle}, only the record is canceled"
            )

        return await self.store.update_query(
            query_id,
            status=status,
            error=error,
            error_kind=error_kind,
            finished_at=self.clock.now(),
        )

    async def _request_external_cancel(self, integration: Integration, handle: str) -> None:
        try:
            await integration.cancel_query(handle)
        except Exception as e:
            # The local record is still canceled, nobody waits on the job anymore
            logger.warning(f"Failed to cancel external query {handle}: {e}")

    async def cancel_analysis(
        self,
        analysis_id: str,
        integration: Optional[Integration],
        organization: Optional[str] = None,
    ) -> AnalysisRecord:
        """
        Cancel every running query of an analysis and mark it canceled.

        Canceling a finished analysis is a no-op.

        Raises:
            AnalysisNotFoundError: unknown analysis id.
        """
        analysis = await self.store.get_analysis_by_id(analysis_id, organization)
        if analysis is None:
            raise AnalysisNotFoundError(analysis_id)
        if analysis.is_terminal:
            logger.info(f"Analysis {analysis_id} already {analysis.status.value}, nothing to cancel")
            return analysis

        token = self.registry.get(analysis_id)
        if token is not None:
            token.cancel(CancelReason.REQUESTED)

        try:
            running = await self._close_canceled(analysis_id, integration)
            logger.info(f"Canceled analysis {analysis_id} ({len(running)} running queries)")
        finally:
            if token is not None:
                token.mark_settled()

        return await self._reload(analysis_id)

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------
    async def get_analysis(
        self, analysis_id: str, organization: Optional[str] = None
    ) -> AnalysisRecord:
        analysis = await self.store.get_analysis_by_id(analysis_id, organization)
        if analysis is None:
            raise AnalysisNotFoundError(analysis_id)
        return analysis

    async def get_latest_analysis(
        self, organization: str, kind: str, target_key: str
    ) -> Optional[AnalysisRecord]:
        return await self.store.get_latest_analysis(organization, kind, target_key)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    async def _finish(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        return await self.store.update_analysis(
            analysis_id,
            expected_statuses=IN_FLIGHT_ANALYSIS_STATUSES,
            status=status,
            result=result,
            error=error,
            finished_at=self.clock.now(),
        )

    async def _close_canceled(
        self, analysis_id: str, integration: Optional[Integration]
    ) -> List[QueryRecord]:
        """Cancel the running queries of an analysis, then the analysis itself."""
        running = await self.store.get_running_queries(analysis_id)
        await asyncio.gather(
            *(
                self.cancel_query(query.id, integration, handle=query.external_handle)
                for query in running
            )
        )
        await self._finish(analysis_id, AnalysisStatus.CANCELED)
        return running

    async def _abandon(self, analysis_id: str, error: Optional[str] = None) -> None:
        for query in await self.store.get_running_queries(analysis_id):
            await self.store.update_query(
                query.id, status=QueryStatus.CANCELED, finished_at=self.clock.now()
            )
        if error:
            await self._finish(analysis_id, AnalysisStatus.ERROR, error=error)
        else:
            await self._finish(analysis_id, AnalysisStatus.CANCELED)

    async def _reload(self, analysis_id: str) -> AnalysisRecord:
        return await self.get_analysis(analysis_id)
