"""
Job store: the authoritative status snapshot of every job.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, func, select, update

from cookmode.config.logging import get_logger
from cookmode.config.settings import Settings
from cookmode.core.exceptions import NotFoundError
from cookmode.infra.database import Database
from cookmode.infra.jobs.models import Job, JobStatus, utcnow
from cookmode.infra.jobs.schemas import JobSnapshot, JobStats

logger = get_logger(__name__)


class JobStore:
    """Reads job snapshots and records progress for leased jobs."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    async def find(self, job_id: UUID) -> JobSnapshot | None:
        async with self.database.session() as session:
            job = await session.get(Job, job_id)
            return JobSnapshot.from_job(job) if job else None

    async def get(self, job_id: UUID) -> JobSnapshot:
        snapshot = await self.find(job_id)
        if snapshot is None:
            raise NotFoundError(job_id)
        return snapshot

    async def update_progress(
        self,
        job_id: UUID,
        progress: int,
        stage: str | None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Record progress for an active job.

        Progress never moves backwards within a lease: the update only
        applies while the stored value is not greater than the new one.
        When worker_id is given, only the current lease holder may write.
        Returns True when the snapshot changed.
        """
        progress = max(0, min(100, int(progress)))
        query = update(Job).where(
            Job.id == job_id,
            Job.status == JobStatus.ACTIVE.value,
            Job.progress <= progress,
        )
        if worker_id is not None:
            query = query.where(Job.locked_by == worker_id)

        async with self.database.session() as session:
            result = await session.execute(
                query.values(progress=progress, stage=stage, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        updated = result.rowcount > 0
        if not updated:
            logger.debug(
                "Progress update skipped",
                job_id=str(job_id),
                progress=progress,
                stage=stage,
            )
        return updated

    async def stats(self) -> JobStats:
        """Job counts by status and type."""
        async with self.database.session() as session:
            total_result = await session.execute(select(func.count(Job.id)))
            total_jobs = total_result.scalar() or 0

            status_result = await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
            by_status = dict(status_result.all())

            type_result = await session.execute(
                select(Job.type, func.count(Job.id)).group_by(Job.type)
            )
            by_type = dict(type_result.all())

        queue_depth = by_status.get(JobStatus.PENDING.value, 0) + by_status.get(
            JobStatus.ACTIVE.value, 0
        )

        return JobStats(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
        )

    async def cleanup_finished(self, older_than_days: int | None = None) -> int:
        """Delete completed and failed jobs past the retention window."""
        retention_days = (
            self.settings.job_cleanup_after_days
            if older_than_days is None
            else older_than_days
        )
        cutoff = utcnow() - timedelta(days=retention_days)

        async with self.database.session() as session:
            result = await session.execute(
                delete(Job)
                .where(
                    Job.status.in_(
                        [JobStatus.COMPLETED.value, JobStatus.FAILED.value]
                    ),
                    Job.finished_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            deleted_count = result.rowcount
            await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )

        return deleted_count
