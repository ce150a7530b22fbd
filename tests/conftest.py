import asyncio
import copy
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.main import app
from app.api.dependencies import get_runner, get_store
from app.core.analysis.runner import QueryRunner, RunRegistry
from app.core.analysis.store import AnalysisStore
from app.core.database import Base
from app.core.errors import ExecutionError, SubmissionError
from app.core.integrations.base import PollResult, SubmitResult
from app.core.integrations.sql import IntegrationFactory, get_integration_factory


# =========================
# Fakes
# =========================
class FakeClock:
    """
    Virtual time for the runner.

    With ``autoadvance`` every sleep finishes at once after moving time
    forward. Without it sleepers wait until the test calls ``advance``.
    """

    def __init__(self, autoadvance: bool = True):
        self.autoadvance = autoadvance
        self.start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps = []
        self._changed = asyncio.Event()

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.autoadvance:
            self.elapsed += seconds
            await asyncio.sleep(0)
            return

        target = self.elapsed + seconds
        while self.elapsed < target:
            await self._changed.wait()

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()


class FakeIntegration:
    """Warehouse double scripted per SQL text."""

    def __init__(self):
        self.scripts = {}
        self.jobs = {}
        self.submitted = []
        self.polls = defaultdict(int)
        self.canceled = []
        self.fail_cancel = False
        self.gates = []

    # --- scripting ---
    def returns(self, sql, rows):
        self.scripts[sql] = {"kind": "rows", "rows": rows}

    def fails(self, sql, error="relation does not exist"):
        self.scripts[sql] = {"kind": "fail", "error": error}

    def rejects(self, sql, error="authentication failed"):
        self.scripts[sql] = {"kind": "reject", "error": error}

    def pollable(self, sql, rows=None, after=1, error=None, never=False):
        self.scripts[sql] = {
            "kind": "poll",
            "rows": rows or [],
            "after": after,
            "error": error,
            "never": never,
        }

    def gated(self, sql, rows):
        """Synchronous query that only returns once ``release_all`` is called."""
        gate = asyncio.Event()
        self.gates.append(gate)
        self.scripts[sql] = {"kind": "gate", "rows": rows, "gate": gate}
        return gate

    def release_all(self):
        for gate in self.gates:
            gate.set()

    # --- integration protocol ---
    async def submit_query(self, sql, template_vars):
        self.submitted.append(sql)
        script = self.scripts[sql]

        if script["kind"] == "rows":
            return SubmitResult(rows=copy.deepcopy(script["rows"]))
        if script["kind"] == "fail":
            raise ExecutionError(script["error"])
        if script["kind"] == "reject":
            raise SubmissionError(script["error"])
        if script["kind"] == "gate":
            await script["gate"].wait()
            return SubmitResult(rows=copy.deepcopy(script["rows"]))

        handle = f"job-{len(self.submitted)}"
        self.jobs[handle] = script
        return SubmitResult(handle=handle)

    async def poll_query(self, handle):
        self.polls[handle] += 1
        script = self.jobs[handle]

        if script["never"] or self.polls[handle] < script["after"]:
            return PollResult.pending()
        if script["error"]:
            return PollResult.failed(script["error"])
        return PollResult.succeeded(copy.deepcopy(script["rows"]))

    async def cancel_query(self, handle):
        self.canceled.append(handle)
        if self.fail_cancel:
            raise ConnectionError("warehouse unreachable")


# =========================
# Database
# =========================
# Fresh sqlite database for every test, dropped with tmp_path
@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analyses.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def store(session_factory):
    return AnalysisStore(session_factory)


# =========================
# Runner
# =========================
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def integration():
    return FakeIntegration()


@pytest_asyncio.fixture(scope="function")
async def runner(store, clock, integration):
    runner = QueryRunner(
        store, registry=RunRegistry(), clock=clock, poll_interval=1, poll_timeout=10
    )
    yield runner

    # Unblock anything still waiting on the fake warehouse before the db goes away
    integration.release_all()
    await runner.registry.shutdown(grace_seconds=1)


# Time only moves when the test calls clock.advance()
@pytest_asyncio.fixture(scope="function")
async def manual_runner(store, integration):
    runner = QueryRunner(
        store,
        registry=RunRegistry(),
        clock=FakeClock(autoadvance=False),
        poll_interval=1,
        poll_timeout=10,
    )
    yield runner

    integration.release_all()
    await runner.registry.shutdown(grace_seconds=1)


# =========================
# Warehouse (real sqlite behind SqlIntegration)
# =========================
EVENTS = [
    # user_id, timestamp, country, device, value
    ("u1", "2025-01-10 10:00:00", "US", "mobile", 10.0),
    ("u2", "2025-01-11 10:00:00", "US", "desktop", 20.0),
    ("u3", "2025-01-12 10:00:00", "FR", "mobile", 30.0),
    ("u4", "2025-01-20 10:00:00", "US", "mobile", 40.0),
    # Outside a 30 day lookback ending 2025-01-31
    ("u5", "2024-11-01 10:00:00", "DE", "tablet", 50.0),
]


@pytest_asyncio.fixture(scope="function")
async def warehouse_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE events (user_id TEXT, timestamp TEXT, country TEXT, "
                "device TEXT, value REAL)"
            )
        )
        for row in EVENTS:
            await conn.execute(
                text(
                    "INSERT INTO events VALUES (:user_id, :timestamp, :country, :device, :value)"
                ),
                dict(zip(["user_id", "timestamp", "country", "device", "value"], row)),
            )
    await engine.dispose()
    return url


@pytest_asyncio.fixture(scope="function")
async def integration_factory(warehouse_url):
    factory = IntegrationFactory({"warehouse": warehouse_url})
    yield factory
    await factory.dispose()


# =========================
# Client
# =========================
@pytest_asyncio.fixture(scope="function")
async def api_registry():
    registry = RunRegistry()
    yield registry
    await registry.shutdown(grace_seconds=1)


@pytest_asyncio.fixture(scope="function")
async def client(store, integration_factory, api_registry):
    def override_get_runner():
        return QueryRunner(
            store, registry=api_registry, poll_interval=0.01, poll_timeout=5
        )

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_runner] = override_get_runner
    app.dependency_overrides[get_integration_factory] = lambda: integration_factory

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def org_headers():
    return {"X-Organization": "org_1"}
