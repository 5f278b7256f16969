"""
Pydantic schemas for operations, job snapshots and bus messages.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from pydantic.alias_generators import to_camel

from cookmode.infra.jobs.models import Job, JobStatus, as_utc


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Operation(BaseModel):
    """A typed request for work. The payload shape is determined by type."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1, description="Operation type tag")
    payload: dict[str, Any] = Field(default_factory=dict)


# Operation payloads


class RecipeExtractPayload(WireModel):
    url: HttpUrl
    user_id: UUID | None = None


class IngredientParsePayload(WireModel):
    image_url: HttpUrl
    user_id: UUID


class VoiceTrackPayload(WireModel):
    user_id: UUID
    session_id: UUID
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)


class ParsedIngredient(WireModel):
    name: str
    confidence: float = Field(..., ge=0, le=1)
    category: str | None = None
    quantity: str | None = None


# Job state


class JobSnapshot(WireModel):
    """Authoritative job state as exposed to submitters."""

    job_id: UUID
    type: str
    status: JobStatus
    queue_status: JobStatus
    stage: str | None = None
    progress: int = 0
    attempts: int = 0
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSnapshot":
        queue_status = JobStatus(job.status)
        # A job waiting for another attempt still looks in-flight to the submitter
        status = JobStatus.ACTIVE if job.is_awaiting_retry() else queue_status
        return cls(
            job_id=job.id,
            type=job.type,
            status=status,
            queue_status=queue_status,
            stage=job.stage,
            progress=job.progress,
            attempts=job.attempts,
            result=job.result if queue_status == JobStatus.COMPLETED else None,
            failure_reason=(
                job.failure_reason if queue_status == JobStatus.FAILED else None
            ),
            created_at=as_utc(job.created_at),
            started_at=as_utc(job.started_at),
            finished_at=as_utc(job.finished_at),
        )


class LeasedJob(BaseModel):
    """A job handed to one executor for the duration of its lease."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    operation: Operation
    attempt: int
    worker_id: str
    lease_expires_at: datetime


class RequeueDecision(BaseModel):
    """Outcome of Broker.fail: another attempt later, or terminal failure."""

    model_config = ConfigDict(frozen=True)

    retry: bool
    attempt: int
    delay_seconds: float = 0.0
    run_at: datetime | None = None


class JobStats(BaseModel):
    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + active


# Bus messages


class ProgressEvent(WireModel):
    """One stage transition of a running job."""

    job_id: UUID
    stage: str
    progress: int = Field(..., ge=0, le=100)
    message: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None


class LifecycleEvent(WireModel):
    """Terminal outcome of a job, published once per job."""

    job_id: UUID
    event_type: Literal["completed", "failed"]
    attempts: int
    result: dict[str, Any] | None = None
    error: str | None = None
