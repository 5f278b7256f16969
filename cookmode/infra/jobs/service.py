"""
Job service: the submitter-facing entry point of the queue.
"""

import uuid
from typing import Any
from uuid import UUID

from cookmode.config.logging import get_logger
from cookmode.core.registries import OperationRegistry
from cookmode.infra.jobs.broker import Broker
from cookmode.infra.jobs.operations import validate_operation
from cookmode.infra.jobs.schemas import JobSnapshot, JobStats
from cookmode.infra.jobs.store import JobStore
from cookmode.infra.pubsub.bus import EventHandler, PubSub, Subscription
from cookmode.infra.pubsub.topics import Topics

logger = get_logger(__name__)


class JobService:
    """Service for submitting jobs and following their progress."""

    def __init__(
        self,
        broker: Broker,
        store: JobStore,
        pubsub: PubSub,
        operations: OperationRegistry,
    ):
        self.broker = broker
        self.store = store
        self.pubsub = pubsub
        self.operations = operations

    async def submit(self, operation: Any) -> UUID:
        """
        Validate an operation and enqueue it as a new job.

        Args:
            operation: Operation model or {"type": ..., "payload": ...} mapping

        Returns:
            Id of the new pending job

        Raises:
            ValidationError: unknown type or invalid payload; nothing is enqueued
        """
        normalized = validate_operation(self.operations, operation)
        job_id = uuid.uuid4()
        await self.broker.enqueue(normalized, job_id)

        logger.info("Job submitted", job_id=str(job_id), job_type=normalized.type)
        return job_id

    async def get_job(self, job_id: UUID) -> JobSnapshot:
        """Current snapshot of a job. Raises NotFoundError for unknown ids."""
        return await self.store.get(job_id)

    async def stats(self) -> JobStats:
        return await self.store.stats()

    async def cleanup(self, older_than_days: int | None = None) -> int:
        return await self.store.cleanup_finished(older_than_days)

    async def subscribe(
        self,
        job_id: UUID,
        on_progress: EventHandler | None = None,
        on_event: EventHandler | None = None,
    ) -> list[Subscription]:
        """Follow a job's progress and lifecycle topics."""
        subscriptions = []
        if on_progress is not None:
            subscriptions.append(
                await self.pubsub.subscribe(Topics.job_progress(job_id), on_progress)
            )
        if on_event is not None:
            subscriptions.append(
                await self.pubsub.subscribe(Topics.job_events(job_id), on_event)
            )
        return subscriptions
