import asyncio
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from cookmode.collaborators.extraction import ExtractionClient
from cookmode.collaborators.usage import UsageRepository
from cookmode.config.logging import get_logger, setup_logging
from cookmode.config.settings import PubSubBackend, Settings, get_settings
from cookmode.core.registries import HandlerRegistry, OperationRegistry
from cookmode.infra.database import Database
from cookmode.infra.jobs.broker import Broker
from cookmode.infra.jobs.operations import build_operation_registry
from cookmode.infra.jobs.registry_init import build_handler_registry
from cookmode.infra.jobs.service import JobService
from cookmode.infra.jobs.store import JobStore
from cookmode.infra.jobs.worker import WorkerPool
from cookmode.infra.pubsub.bus import InMemoryPubSub, PubSub
from cookmode.infra.pubsub.redis_bus import RedisPubSub
from cookmode.infra.redis import create_redis_client

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Every component of the job system, wired together."""

    settings: Settings
    database: Database
    pubsub: PubSub
    broker: Broker
    store: JobStore
    operations: OperationRegistry
    handlers: HandlerRegistry
    extraction: ExtractionClient
    usage: UsageRepository
    service: JobService
    pool: WorkerPool


def create_pubsub(settings: Settings) -> PubSub:
    """Build the configured bus. Redis gets separate publish and subscribe clients."""
    if settings.pubsub_backend == PubSubBackend.MEMORY:
        return InMemoryPubSub()
    return RedisPubSub(
        create_redis_client(settings),
        create_redis_client(settings),
        owns_clients=True,
    )


@asynccontextmanager
async def create_runtime(
    settings: Settings | None = None,
    *,
    pubsub: PubSub | None = None,
    extraction: ExtractionClient | None = None,
    concurrency: int | None = None,
) -> AsyncIterator[Runtime]:
    """Create and tear down the job system for settings."""
    settings = settings or get_settings()

    database = Database(settings)
    await database.create_all()

    pubsub = pubsub or create_pubsub(settings)
    extraction = extraction or ExtractionClient.from_settings(settings)

    broker = Broker(database, settings)
    store = JobStore(database, settings)
    usage = UsageRepository(database, settings)

    operations = build_operation_registry()
    operations.freeze()
    handlers = build_handler_registry(extraction, usage)

    service = JobService(broker, store, pubsub, operations)
    pool = WorkerPool(
        broker, store, pubsub, handlers, operations, settings, concurrency=concurrency
    )

    runtime = Runtime(
        settings=settings,
        database=database,
        pubsub=pubsub,
        broker=broker,
        store=store,
        operations=operations,
        handlers=handlers,
        extraction=extraction,
        usage=usage,
        service=service,
        pool=pool,
    )
    try:
        yield runtime
    finally:
        await pool.stop()
        broker.close()
        await pubsub.close()
        await extraction.close()
        await database.close()


async def run_worker(settings: Settings, concurrency: int | None = None) -> None:
    """Run the worker pool until SIGINT or SIGTERM."""
    async with create_runtime(settings, concurrency=concurrency) as runtime:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, runtime.pool.request_stop)

        logger.info(
            "Starting worker",
            app_name=settings.app_name,
            version=settings.version,
            environment=settings.environment,
        )
        await runtime.pool.run_forever()


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings)
    asyncio.run(run_worker(settings))
