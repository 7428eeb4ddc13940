"""Pytest fixtures for test suite."""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch, AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

# Add backend to path for imports
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from database import Base
from services.broker import (
    BrokerClient,
    BrokerConnection,
    BrokerConsumer,
    BrokerMessage,
    BrokerProducer,
    BrokerRecord,
)
from services.events import EventBroadcaster
from services.job_engine import JobEngine
from services.job_logs import JobLogBook
from services.job_registry import JobRegistry
from services.job_store import JobStore

# Use SQLite for tests with StaticPool to share connection across async operations.
# StaticPool ensures the same connection is reused, so tables created in create_all()
# are visible to all sessions. Without this, each connection gets its own empty DB.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Import models to register with Base.metadata
    from models import job, profile  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(session_maker):
    """Create a test database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def job_store(session_maker):
    return JobStore(session_maker)


# ============================================================================
# Fake broker collaborators
# ============================================================================

class FakeProducer(BrokerProducer):
    """Records every batch it is asked to send."""

    def __init__(self, suffix: str, connect_error: Optional[Exception] = None):
        self.suffix = suffix
        self.connect_error = connect_error
        self.send_error: Optional[Exception] = None
        self.send_delay = 0.0
        self.sent: List[BrokerRecord] = []
        self.batches = 0
        self.connected = False
        self.disconnects = 0

    async def connect(self) -> None:
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def send(self, topic: str, records: List[BrokerRecord]) -> list:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error:
            raise self.send_error
        self.batches += 1
        self.sent.extend(records)
        return [{"topic": topic, "offset": len(self.sent)}]

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1


class FakeConsumer(BrokerConsumer):
    """Delivers whatever the test feeds into it."""

    def __init__(self, group_id: str, suffix: str, subscribe_error: Optional[Exception] = None):
        self.group_id = group_id
        self.suffix = suffix
        self.subscribe_error = subscribe_error
        self.topic: Optional[str] = None
        self.from_beginning = False
        self.disconnects = 0
        self.queue: asyncio.Queue = asyncio.Queue()
        self._offset = 0

    async def subscribe(self, topic: str, from_beginning: bool = False) -> None:
        if self.subscribe_error:
            raise self.subscribe_error
        self.topic = topic
        self.from_beginning = from_beginning

    def feed(self, value, partition: int = 0, lag: Optional[int] = None) -> None:
        if isinstance(value, dict):
            value = json.dumps(value)
        if isinstance(value, str):
            value = value.encode("utf-8")
        self.queue.put_nowait(BrokerMessage(
            topic=self.topic or "test-topic",
            partition=partition,
            offset=self._offset,
            value=value,
            lag=lag,
        ))
        self._offset += 1

    async def run(self, on_message) -> None:
        while True:
            message = await self.queue.get()
            await on_message(message)

    async def disconnect(self) -> None:
        self.disconnects += 1


class FakeBrokerClient(BrokerClient):
    def __init__(self, brokers=None, client_id=None, sasl=None, topics=None):
        self.brokers = brokers or ["localhost:9092"]
        self.client_id = client_id
        self.sasl = sasl
        self.topics = topics if topics is not None else ["orders", "test-topic"]
        self.producers: List[FakeProducer] = []
        self.consumers: List[FakeConsumer] = []
        self.producer_connect_error: Optional[Exception] = None
        self.consumer_subscribe_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.disconnected = False

    async def connect(self) -> None:
        if self.connect_error:
            raise self.connect_error

    async def list_topics(self) -> List[str]:
        return list(self.topics)

    async def describe_topic(self, name: str) -> dict:
        return {
            "name": name,
            "partitionCount": 1,
            "replicationFactor": 1,
            "partitions": [{"partition": 0, "leader": 1, "replicas": [1], "isr": [1]}],
            "configEntries": {"cleanup.policy": "delete"},
        }

    def producer(self, client_suffix, compression=None, acks=None) -> FakeProducer:
        producer = FakeProducer(client_suffix, connect_error=self.producer_connect_error)
        self.producers.append(producer)
        return producer

    def consumer(self, group_id, client_suffix) -> FakeConsumer:
        consumer = FakeConsumer(group_id, client_suffix, subscribe_error=self.consumer_subscribe_error)
        self.consumers.append(consumer)
        return consumer

    async def disconnect(self) -> None:
        self.disconnected = True


@pytest.fixture
def fake_client():
    return FakeBrokerClient()


@pytest.fixture
def broadcaster():
    return EventBroadcaster(queue_size=10000)


@pytest.fixture
def registry(job_store, broadcaster):
    return JobRegistry(job_store, broadcaster, stop_grace_seconds=1.0)


@pytest.fixture
async def job_engine(job_store, broadcaster, registry, fake_client):
    """Engine wired to the in-memory store and an already connected fake broker."""
    connection = BrokerConnection()
    await connection.connect(fake_client)
    engine = JobEngine(
        connection=connection,
        store=job_store,
        broadcaster=broadcaster,
        log_book=JobLogBook(),
        registry=registry,
        client_factory=FakeBrokerClient,
        count_send_delay_ms=0,
    )
    yield engine
    await engine.registry.stop_all()


@pytest.fixture
async def test_client(job_engine, session_maker):
    """Create a test HTTP client for API testing.

    Mocks init_db and close_db so the app never touches the real database,
    and points the engine and DB dependencies at the test fixtures.
    """
    with patch("main.init_db", new_callable=AsyncMock), \
         patch("main.close_db", new_callable=AsyncMock):

        from main import app
        from database import get_db

        async def override_get_db():
            async with session_maker() as session:
                yield session

        app.state.engine = job_engine
        app.dependency_overrides[get_db] = override_get_db

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

        app.dependency_overrides.clear()


def drain(subscription) -> List[dict]:
    """Everything currently queued for an observer."""
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events
