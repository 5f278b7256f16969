from collections.abc import AsyncGenerator, Callable
from typing import Any
from uuid import uuid4

import httpx
import pytest
import structlog

from cookmode.collaborators.extraction import ExtractionClient
from cookmode.collaborators.usage import UsageRepository
from cookmode.config.settings import PubSubBackend, Settings
from cookmode.infra.database import Database
from cookmode.infra.jobs.broker import Broker
from cookmode.infra.jobs.handlers import JobContext
from cookmode.infra.jobs.operations import build_operation_registry
from cookmode.infra.jobs.registry_init import build_handler_registry
from cookmode.infra.jobs.schemas import Operation
from cookmode.infra.jobs.service import JobService
from cookmode.infra.jobs.store import JobStore
from cookmode.infra.jobs.worker import WorkerPool
from cookmode.infra.pubsub.bus import InMemoryPubSub


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for a throwaway SQLite database and the in-memory bus."""
    return Settings(
        _env_file=None,
        environment="test",
        debug=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        pubsub_backend=PubSubBackend.MEMORY,
        worker_concurrency=2,
        job_max_attempts=3,
        job_backoff_base_ms=10,
        job_max_backoff_s=1,
        job_poll_interval_ms=20,
        job_recovery_interval_s=1,
        job_shutdown_grace_s=2,
        extraction_service_url="http://extraction.test",
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def broker(database, settings) -> AsyncGenerator[Broker, None]:
    b = Broker(database, settings)
    yield b
    b.close()


@pytest.fixture
def store(database, settings) -> JobStore:
    return JobStore(database, settings)


@pytest.fixture
def usage(database, settings) -> UsageRepository:
    return UsageRepository(database, settings)


@pytest.fixture
async def pubsub() -> AsyncGenerator[InMemoryPubSub, None]:
    bus = InMemoryPubSub()
    yield bus
    await bus.close()


@pytest.fixture
def operations():
    registry = build_operation_registry()
    registry.freeze()
    return registry


@pytest.fixture
def service(broker, store, pubsub, operations) -> JobService:
    return JobService(broker, store, pubsub, operations)


@pytest.fixture
def extraction_responses() -> dict[str, list[Any]]:
    """
    Scripted extraction service replies keyed by path.

    Each entry is consumed in order; an entry is either an httpx.Response or
    an exception instance to raise. The last entry repeats.
    """
    return {}


@pytest.fixture
def extraction_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
async def extraction(
    extraction_responses, extraction_requests
) -> AsyncGenerator[ExtractionClient, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        extraction_requests.append(request)
        replies = extraction_responses.get(request.url.path)
        if not replies:
            return httpx.Response(404, json={"detail": "not found"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    client = ExtractionClient(
        "http://extraction.test", timeout=5.0, transport=httpx.MockTransport(handler)
    )
    yield client
    await client.close()


@pytest.fixture
def handlers(extraction, usage):
    return build_handler_registry(extraction, usage)


@pytest.fixture
async def pool(
    broker, store, pubsub, handlers, operations, settings
) -> AsyncGenerator[WorkerPool, None]:
    worker_pool = WorkerPool(broker, store, pubsub, handlers, operations, settings)
    yield worker_pool
    await worker_pool.stop()


@pytest.fixture
def recorder() -> Callable[[], tuple[list[dict[str, Any]], Callable]]:
    """Factory for subscriber handlers that collect the events they receive."""

    def make():
        events: list[dict[str, Any]] = []
        return events, events.append

    return make


@pytest.fixture
async def leased_context(broker, store, pubsub):
    """Enqueue and lease one job, returning a JobContext for it."""

    async def make(operation: Operation) -> JobContext:
        await broker.enqueue(operation, uuid4())
        job = await broker.lease("test-worker")
        return JobContext(job, store, pubsub)

    return make


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()
