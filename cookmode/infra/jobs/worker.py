"""
Worker pool: executors that lease jobs from the broker and run their handlers.
"""

import asyncio
import os
import socket
from uuid import UUID

from cookmode.config.logging import bind_job_context, clear_job_context, get_logger
from cookmode.config.settings import Settings
from cookmode.core.exceptions import (
    CookModeException,
    TerminalHandlerError,
    ValidationError,
    is_terminal,
)
from cookmode.core.registries import HandlerRegistry, OperationRegistry
from cookmode.infra.jobs.broker import Broker
from cookmode.infra.jobs.handlers import JobContext
from cookmode.infra.jobs.operations import decode_payload
from cookmode.infra.jobs.schemas import LeasedJob, LifecycleEvent
from cookmode.infra.jobs.store import JobStore
from cookmode.infra.pubsub.bus import PubSub, publish_best_effort
from cookmode.infra.pubsub.topics import Topics

logger = get_logger(__name__)

JOB_CONTEXT_KEYS = ("job_id", "job_type", "worker_id", "attempt")


class WorkerPool:
    """
    A fixed set of executors sharing one broker.

    Features:
    - Each executor holds at most one lease at a time
    - Idle executors sleep until an enqueue, a due retry or the poll interval
    - Expired leases are recovered periodically (at-least-once execution)
    - Graceful shutdown with a grace period for in-flight jobs
    """

    def __init__(
        self,
        broker: Broker,
        store: JobStore,
        pubsub: PubSub,
        handlers: HandlerRegistry,
        operations: OperationRegistry,
        settings: Settings,
        concurrency: int | None = None,
    ):
        self.broker = broker
        self.store = store
        self.pubsub = pubsub
        self.handlers = handlers
        self.operations = operations
        self.settings = settings
        self.concurrency = concurrency or settings.worker_concurrency
        self.worker_prefix = f"{socket.gethostname()}-{os.getpid()}"
        self.running = False
        self._executors: dict[str, asyncio.Task] = {}
        self._idle: set[str] = set()
        self._recovery: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Spawn the executors and the lease recovery task."""
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self.running = True
        self._stopped.clear()
        for n in range(self.concurrency):
            worker_id = f"{self.worker_prefix}-{n}"
            self._executors[worker_id] = asyncio.create_task(
                self._executor_loop(worker_id), name=worker_id
            )
        self._recovery = asyncio.create_task(
            self._recovery_loop(), name=f"{self.worker_prefix}-recovery"
        )

        logger.info(
            "Worker pool started",
            concurrency=self.concurrency,
            queue=self.broker.queue,
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

    async def run_forever(self) -> None:
        """Run until request_stop() or stop(), then shut down gracefully."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask run_forever to shut the pool down. Safe to call from a signal handler."""
        self._stopped.set()

    async def stop(self) -> None:
        """Stop leasing, let in-flight jobs finish within the grace period."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping worker pool", in_flight=self.in_flight)

        if self._recovery is not None:
            self._recovery.cancel()

        for worker_id in list(self._idle):
            self._executors[worker_id].cancel()

        busy = [
            task
            for worker_id, task in self._executors.items()
            if worker_id not in self._idle and not task.done()
        ]
        if busy:
            _, pending = await asyncio.wait(
                busy, timeout=self.settings.job_shutdown_grace_s
            )
            if pending:
                logger.warning(
                    "Cancelling jobs still running after grace period",
                    cancelled=len(pending),
                    grace_s=self.settings.job_shutdown_grace_s,
                )
                for task in pending:
                    task.cancel()

        tasks = list(self._executors.values())
        if self._recovery is not None:
            tasks.append(self._recovery)
        await asyncio.gather(*tasks, return_exceptions=True)

        self._executors.clear()
        self._idle.clear()
        self._recovery = None
        self._stopped.set()
        logger.info("Worker pool stopped")

    @property
    def in_flight(self) -> int:
        return len(self._executors) - len(self._idle)

    async def run_once(self, worker_id: str | None = None) -> UUID | None:
        """Lease and process at most one job. Returns its id, if any."""
        worker_id = worker_id or f"{self.worker_prefix}-once"
        job = await self.broker.lease(worker_id)
        if job is None:
            return None
        await self.process(job)
        return job.id

    async def process(self, job: LeasedJob) -> None:
        """Run the handler for a leased job and settle the lease."""
        ctx = JobContext(job, self.store, self.pubsub)
        bind_job_context(
            job_id=str(job.id),
            job_type=job.operation.type,
            worker_id=job.worker_id,
            attempt=job.attempt,
        )
        try:
            try:
                handler = self.handlers.get(job.operation.type)
                payload = decode_payload(
                    self.operations, job.operation.type, job.operation.payload
                )
            except (KeyError, ValidationError) as e:
                error = TerminalHandlerError(
                    f"Cannot execute {job.operation.type} job: {e}"
                )
                logger.error("Job cannot be executed", error=error.message)
                await ctx.report_failure("Job cannot be executed", error)
                await self._settle_failure(ctx, error)
                return

            logger.info("Processing job started")
            try:
                result = await handler.handle(ctx, payload)
            except asyncio.CancelledError:
                logger.warning("Job processing cancelled, lease left to expire")
                raise
            except Exception as e:
                await self._settle_failure(ctx, e)
                return

            try:
                await self.broker.ack(job.id, result, ctx.attempt)
            except CookModeException as e:
                logger.warning("Ack rejected", error=e.message, code=e.code)
                return
            logger.info("Processing job completed successfully")
        finally:
            clear_job_context(*JOB_CONTEXT_KEYS)

    async def recover_expired(self) -> int:
        """Requeue expired leases and announce the jobs that ran out of attempts."""
        recovered = await self.broker.requeue_expired()
        for job_id in recovered.failed:
            await publish_best_effort(
                self.pubsub,
                Topics.job_events(job_id),
                LifecycleEvent(
                    job_id=job_id,
                    event_type="failed",
                    attempts=self.settings.job_max_attempts,
                    error="Lease expired",
                ),
            )
        return recovered.count

    async def _settle_failure(self, ctx: JobContext, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        try:
            decision = await self.broker.fail(
                ctx.job_id, error, ctx.attempt, terminal=is_terminal(error)
            )
        except CookModeException as e:
            logger.warning("Failure not recorded", error=e.message, code=e.code)
            return

        if decision.retry:
            return

        await publish_best_effort(
            self.pubsub,
            Topics.job_events(ctx.job_id),
            LifecycleEvent(
                job_id=ctx.job_id,
                event_type="failed",
                attempts=ctx.attempt,
                error=message,
            ),
        )

    async def _executor_loop(self, worker_id: str) -> None:
        poll_interval = self.settings.job_poll_interval_ms / 1000
        while self.running:
            self._idle.add(worker_id)
            try:
                job = await self.broker.lease(worker_id, wait=poll_interval)
            except Exception:
                logger.exception("Error leasing job", worker_id=worker_id)
                await asyncio.sleep(poll_interval)
                continue
            finally:
                self._idle.discard(worker_id)

            if job is None:
                continue
            try:
                await self.process(job)
            except Exception:
                # The lease expires and the job is recovered
                logger.exception("Error processing job", job_id=str(job.id))

    async def _recovery_loop(self) -> None:
        while self.running:
            try:
                await self.recover_expired()
            except Exception:
                logger.exception("Error recovering expired leases")
            await asyncio.sleep(self.settings.job_recovery_interval_s)
