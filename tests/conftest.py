import os
from contextlib import asynccontextmanager

# keep imports of sqlgate.database off the production database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("QUERY_ENGINE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sqlgate.database import create_db_and_tables
from sqlgate.endpoints import create_endpoint, set_endpoint_status
from sqlgate.enums import EndpointStatus
from sqlgate.logging_worker import UsageRecorder
from sqlgate.main import create_app
from sqlgate.query_engine import QueryEngineClient
from sqlgate.security import create_api_key

TABLE_ROWS = 25


class MemoryDeadLetterSink:
    def __init__(self):
        self.entries = []

    async def push(self, events, reason):
        self.entries.extend((reason, event) for event in events)

    async def aclose(self):
        pass


class RecordingSession:
    def __init__(self):
        self.closed = False


class FakeQueryEngine:
    """Records what would have been sent to the warehouse."""

    def __init__(self, rows=None, error=None):
        self.rows = rows if rows is not None else [{"RESULT": 1}]
        self.error = error
        self.executed = []
        self.sessions = []

    async def connect(self):
        session = RecordingSession()
        self.sessions.append(session)
        return session

    async def execute(self, session, statement, binds=()):
        self.executed.append((statement, list(binds)))
        if self.error is not None:
            raise self.error
        return {"rows": self.rows, "rowCount": len(self.rows)}

    async def close(self, session):
        session.closed = True

    @asynccontextmanager
    async def session(self):
        session = await self.connect()
        try:
            yield session
        finally:
            await self.close(session)

    def describe_error(self, exc):
        return str(exc)


@pytest.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await create_db_and_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
async def db(store):
    async with store() as session:
        yield session


@pytest.fixture
async def warehouse(tmp_path):
    client = QueryEngineClient(url=f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}")
    async with client.engine.begin() as conn:
        await conn.execute(text("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT NOT NULL)"))
        await conn.execute(
            text("INSERT INTO t (id, name) VALUES (:id, :name)"),
            [{"id": i, "name": f"row-{i}"} for i in range(1, TABLE_ROWS + 1)],
        )
    yield client
    await client.dispose()


@pytest.fixture
def dead_letter():
    return MemoryDeadLetterSink()


@pytest.fixture
async def recorder(store, dead_letter):
    usage_recorder = UsageRecorder(store, dead_letter)
    usage_recorder.start()
    yield usage_recorder
    await usage_recorder.stop()


@pytest.fixture
def app(store, warehouse, dead_letter, recorder):
    application = create_app(session_factory=store, query_engine=warehouse, dead_letter=dead_letter)
    # the lifespan does not run under ASGITransport
    application.state.usage_recorder = recorder
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client


@pytest.fixture
def publish(store):
    """Create an endpoint, give it a key and (by default) activate it."""

    async def _publish(status=EndpointStatus.ACTIVE, **data):
        data.setdefault("name", "Test Endpoint")
        data.setdefault("type", "table")
        data.setdefault("target", "t")
        data.setdefault("method", "GET")

        async with store() as session:
            endpoint = await create_endpoint(session, data, created_by="tester")
            credential, secret = await create_api_key(session, endpoint.id, created_by="tester")
            if status != EndpointStatus.DRAFT:
                endpoint = await set_endpoint_status(session, endpoint.id, status)
        return endpoint, credential, secret

    return _publish
