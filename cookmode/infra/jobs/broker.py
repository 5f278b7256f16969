"""
Durable FIFO queue with lease-based dispatch.

Leasing is a compare-and-set on the job row, so two executors can never be
granted the same job, whether they live in one process or many. On
PostgreSQL the candidate select also takes FOR UPDATE SKIP LOCKED to keep
racing executors off the same row.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from cookmode.config.logging import get_logger
from cookmode.config.settings import Settings
from cookmode.core.exceptions import (
    DuplicateJobError,
    InvalidTransitionError,
    NotFoundError,
)
from cookmode.infra.database import Database
from cookmode.infra.jobs.models import Job, JobStatus, as_utc, utcnow
from cookmode.infra.jobs.schemas import (
    JobSnapshot,
    LeasedJob,
    Operation,
    RequeueDecision,
)

logger = get_logger(__name__)

PENDING = JobStatus.PENDING.value
ACTIVE = JobStatus.ACTIVE.value
COMPLETED = JobStatus.COMPLETED.value
FAILED = JobStatus.FAILED.value


@dataclass
class ExpiredLeases:
    """Jobs recovered by one requeue_expired sweep."""

    requeued: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.requeued) + len(self.failed)


class Broker:
    """Queue placement and lease state for one named queue."""

    def __init__(self, database: Database, settings: Settings, queue: str | None = None):
        self.database = database
        self.settings = settings
        self.queue = queue or settings.queue_name
        self._last_seq = 0
        # Wake-up signalling for executors suspended in lease(wait=...)
        self._signal_seq = 0
        self._waiters: set[asyncio.Future] = set()
        self._timers: set[asyncio.TimerHandle] = set()

    async def enqueue(self, operation: Operation, job_id: UUID) -> None:
        """Durably record a pending job. Raises DuplicateJobError on id reuse."""
        now = utcnow()
        job = Job(
            id=job_id,
            queue=self.queue,
            type=operation.type,
            payload=dict(operation.payload),
            seq=self._next_seq(),
            status=PENDING,
            run_at=now,
            attempts=0,
            progress=0,
            created_at=now,
            updated_at=now,
        )

        async with self.database.session() as session:
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateJobError(job_id) from None

        logger.info("Job enqueued", job_id=str(job_id), job_type=operation.type)
        self._wake()

    async def lease(self, worker_id: str, wait: float | None = None) -> LeasedJob | None:
        """
        Claim the oldest eligible pending job for worker_id.

        Without wait this is a single poll. With wait (seconds) the caller is
        suspended until a job becomes available or the wait runs out; the
        suspension is bounded by the poll interval so jobs enqueued by other
        processes are picked up too.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait if wait else None
        poll_interval = self.settings.job_poll_interval_ms / 1000

        while True:
            seen = self._signal_seq
            leased = await self._try_lease(worker_id)
            if leased is not None or deadline is None:
                return leased

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await self._wait_for_signal(seen, min(remaining, poll_interval))

    async def ack(
        self, job_id: UUID, result: dict[str, Any] | None, attempt: int
    ) -> None:
        """
        Mark a leased job completed. Repeating the ack is a no-op.

        attempt is the 1-based number of the attempt that succeeded; an ack
        from an attempt whose lease was superseded is rejected.
        """
        now = utcnow()
        async with self.database.session() as session:
            job = await self._load(session, job_id)
            if job.status == COMPLETED:
                if job.result != result:
                    logger.warning(
                        "Ignoring ack with a different result for completed job",
                        job_id=str(job_id),
                    )
                return
            if job.status != ACTIVE:
                raise InvalidTransitionError(job_id, job.status, COMPLETED)
            if job.attempts != attempt:
                # The lease expired and the job was handed out again
                raise InvalidTransitionError(
                    job_id, f"attempt {job.attempts}", COMPLETED
                )

            outcome = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == ACTIVE,
                    Job.attempts == attempt,
                )
                .values(
                    status=COMPLETED,
                    result=result,
                    progress=100,
                    finished_at=now,
                    locked_by=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                await session.rollback()
                raise InvalidTransitionError(job_id, "changed concurrently", COMPLETED)
            await session.commit()

        logger.info("Job completed", job_id=str(job_id))

    async def fail(
        self,
        job_id: UUID,
        error: BaseException | str,
        attempt: int,
        terminal: bool = False,
    ) -> RequeueDecision:
        """
        Record a failed attempt and decide between retry and terminal failure.

        attempt is the 1-based number of the attempt that failed. The job is
        retried after an exponential backoff while attempts remain, unless
        terminal is set.
        """
        message = str(error) or error.__class__.__name__
        now = utcnow()
        retry = not terminal and attempt < self.settings.job_max_attempts

        if retry:
            delay = self.backoff_delay(attempt)
            run_at = now + timedelta(seconds=delay)
            values: dict[str, Any] = {
                "status": PENDING,
                "run_at": run_at,
                "last_error": message,
            }
            decision = RequeueDecision(
                retry=True, attempt=attempt, delay_seconds=delay, run_at=run_at
            )
        else:
            values = {
                "status": FAILED,
                "failure_reason": message,
                "last_error": message,
                "finished_at": now,
            }
            decision = RequeueDecision(retry=False, attempt=attempt)

        async with self.database.session() as session:
            job = await self._load(session, job_id)
            if job.status != ACTIVE:
                raise InvalidTransitionError(job_id, job.status, values["status"])
            if job.attempts != attempt:
                # The lease expired and the job was handed out again
                raise InvalidTransitionError(
                    job_id, f"attempt {job.attempts}", values["status"]
                )

            outcome = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == ACTIVE,
                    Job.attempts == attempt,
                )
                .values(
                    locked_by=None,
                    lease_expires_at=None,
                    updated_at=now,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                await session.rollback()
                raise InvalidTransitionError(
                    job_id, "changed concurrently", values["status"]
                )
            await session.commit()

        if retry:
            logger.info(
                "Job scheduled for retry",
                job_id=str(job_id),
                attempt=attempt,
                delay_seconds=round(decision.delay_seconds, 3),
                error=message,
            )
            self._wake_later(decision.delay_seconds)
        else:
            logger.error(
                "Job failed", job_id=str(job_id), attempt=attempt, error=message
            )

        return decision

    async def get_status(self, job_id: UUID) -> JobSnapshot | None:
        async with self.database.session() as session:
            job = await session.get(Job, job_id)
            return JobSnapshot.from_job(job) if job else None

    async def requeue_expired(self) -> ExpiredLeases:
        """
        Return jobs whose lease ran out without ack/fail to the queue.

        Jobs that already used every attempt are failed instead.
        """
        now = utcnow()
        recovered = ExpiredLeases()

        async with self.database.session() as session:
            expired = await session.execute(
                select(Job.id, Job.attempts).where(
                    Job.queue == self.queue,
                    Job.status == ACTIVE,
                    Job.lease_expires_at < now,
                )
            )

            for job_id, attempts in expired.all():
                exhausted = attempts >= self.settings.job_max_attempts
                if exhausted:
                    reason = f"Lease expired after {attempts} attempts"
                    values: dict[str, Any] = {
                        "status": FAILED,
                        "failure_reason": reason,
                        "last_error": reason,
                        "finished_at": now,
                    }
                else:
                    values = {
                        "status": PENDING,
                        "run_at": now,
                        "last_error": "Lease expired",
                    }

                outcome = await session.execute(
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == ACTIVE,
                        Job.lease_expires_at < now,
                    )
                    .values(
                        locked_by=None,
                        lease_expires_at=None,
                        updated_at=now,
                        **values,
                    )
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount:
                    (recovered.failed if exhausted else recovered.requeued).append(
                        job_id
                    )

            await session.commit()

        if recovered.count:
            logger.warning(
                "Recovered expired leases",
                requeued=[str(job_id) for job_id in recovered.requeued],
                failed=[str(job_id) for job_id in recovered.failed],
                visibility_timeout_s=self.settings.job_visibility_timeout_s,
            )
        if recovered.requeued:
            self._wake()

        return recovered

    async def queue_depth(self) -> dict[str, int]:
        async with self.database.session() as session:
            rows = await session.execute(
                select(Job.status, func.count(Job.id))
                .where(Job.queue == self.queue, Job.status.in_([PENDING, ACTIVE]))
                .group_by(Job.status)
            )
            counts = dict(rows.all())
        return {PENDING: counts.get(PENDING, 0), ACTIVE: counts.get(ACTIVE, 0)}

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff: base * 2^(attempt - 1), capped, optionally jittered."""
        base_delay = self.settings.job_backoff_base_ms / 1000
        max_delay = self.settings.job_max_backoff_s

        delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))

        jitter = self.settings.job_backoff_jitter
        if jitter:
            delay += delay * jitter * (2 * random.random() - 1)

        return max(0.0, delay)

    def close(self) -> None:
        """Cancel pending wake-up timers and release suspended executors."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self._wake()

    async def _try_lease(self, worker_id: str) -> LeasedJob | None:
        async with self.database.session() as session:
            while True:
                now = utcnow()
                candidate_query = (
                    select(Job.id)
                    .where(
                        Job.queue == self.queue,
                        Job.status == PENDING,
                        Job.run_at <= now,
                    )
                    .order_by(Job.seq)
                    .limit(1)
                )
                if self.database.dialect == "postgresql":
                    candidate_query = candidate_query.with_for_update(skip_locked=True)

                candidate = (await session.execute(candidate_query)).scalar_one_or_none()
                if candidate is None:
                    await session.rollback()
                    return None

                lease_expires_at = now + timedelta(
                    seconds=self.settings.job_visibility_timeout_s
                )
                claimed = await session.execute(
                    update(Job)
                    .where(Job.id == candidate, Job.status == PENDING)
                    .values(
                        status=ACTIVE,
                        locked_by=worker_id,
                        locked_at=now,
                        lease_expires_at=lease_expires_at,
                        attempts=Job.attempts + 1,
                        progress=0,
                        stage=None,
                        started_at=func.coalesce(Job.started_at, now),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    await session.commit()
                    break

                # Another executor claimed it between select and update
                await session.rollback()

            job = (
                await session.execute(
                    select(Job)
                    .where(Job.id == candidate)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()

        logger.info(
            "Job leased",
            job_id=str(job.id),
            job_type=job.type,
            worker_id=worker_id,
            attempt=job.attempts,
        )

        return LeasedJob(
            id=job.id,
            operation=Operation(type=job.type, payload=job.payload),
            attempt=job.attempts,
            worker_id=worker_id,
            lease_expires_at=as_utc(job.lease_expires_at),
        )

    async def _load(self, session, job_id: UUID) -> Job:
        job = (
            await session.execute(
                select(Job)
                .where(Job.id == job_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if job is None:
            raise NotFoundError(job_id)
        return job

    def _next_seq(self) -> int:
        seq = max(time.time_ns(), self._last_seq + 1)
        self._last_seq = seq
        return seq

    def _wake(self) -> None:
        self._signal_seq += 1
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        self._waiters.clear()

    def _wake_later(self, delay: float) -> None:
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._timers.discard(timer)
            self._wake()

        timer = loop.call_later(delay, fire)
        self._timers.add(timer)

    async def _wait_for_signal(self, seen: int, timeout: float) -> None:
        if self._signal_seq != seen:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
        except TimeoutError:
            pass
        finally:
            self._waiters.discard(waiter)
