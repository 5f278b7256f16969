"""Tests for the worker pool: execution, retries and recovery"""

import asyncio
from uuid import uuid4

import httpx
import pytest

from cookmode.infra.jobs.broker import Broker
from cookmode.infra.jobs.models import JobStatus
from cookmode.infra.jobs.schemas import Operation
from cookmode.infra.jobs.worker import WorkerPool
from cookmode.infra.pubsub.topics import Topics

IMAGE_URL = "https://example.com/fridge.jpg"
PARSED = {"ingredients": [{"name": "basil", "confidence": 0.8}]}


def ingredient_operation() -> dict:
    return {
        "type": "ingredient.parse",
        "payload": {"imageUrl": IMAGE_URL, "userId": str(uuid4())},
    }


def voice_operation() -> dict:
    return {
        "type": "voice.track",
        "payload": {
            "userId": str(uuid4()),
            "sessionId": str(uuid4()),
            "inputTokens": 100,
            "outputTokens": 100,
        },
    }


async def wait_until(condition, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def follow(service, recorder, job_id):
    progress, on_progress = recorder()
    lifecycle, on_event = recorder()
    await service.subscribe(job_id, on_progress=on_progress, on_event=on_event)
    return progress, lifecycle


class TestProcessing:
    """Single job execution through the pool"""

    @pytest.mark.asyncio
    async def test_ingredient_parse_end_to_end(
        self, service, pool, pubsub, recorder, extraction_responses
    ):
        """Submit, run and observe an ingredient.parse job"""
        extraction_responses["/parse-ingredients"] = [httpx.Response(200, json=PARSED)]
        job_id = await service.submit(ingredient_operation())
        progress, lifecycle = await follow(service, recorder, job_id)

        assert (await service.get_job(job_id)).status == JobStatus.PENDING

        assert await pool.run_once() == job_id
        await pubsub.drain()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.result == PARSED
        assert snapshot.progress == 100
        assert snapshot.attempts == 1

        assert [(e["stage"], e["progress"]) for e in progress] == [
            ("analyzing", 10),
            ("extracting", 70),
            ("completed", 100),
        ]
        assert lifecycle == [
            {
                "jobId": str(job_id),
                "eventType": "completed",
                "attempts": 1,
                "result": PARSED,
            }
        ]

    @pytest.mark.asyncio
    async def test_run_once_with_empty_queue(self, pool):
        assert await pool.run_once() is None

    @pytest.mark.asyncio
    async def test_terminal_error_fails_without_retry(
        self, service, pool, pubsub, recorder, extraction_responses
    ):
        extraction_responses["/parse-ingredients"] = [
            httpx.Response(400, json={"detail": "unsupported image"})
        ]
        job_id = await service.submit(ingredient_operation())
        progress, lifecycle = await follow(service, recorder, job_id)

        await pool.run_once()
        await pubsub.drain()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.FAILED
        assert snapshot.attempts == 1
        assert "400" in snapshot.failure_reason
        assert [e["stage"] for e in progress] == ["analyzing", "failed"]
        assert [e["eventType"] for e in lifecycle] == ["failed"]
        assert lifecycle[0]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_unknown_operation_type_is_terminal(
        self, broker, service, pool, pubsub, recorder
    ):
        """A job whose type has no handler fails on its first attempt"""
        job_id = uuid4()
        await broker.enqueue(Operation(type="mealplan.generate", payload={}), job_id)
        progress, lifecycle = await follow(service, recorder, job_id)

        await pool.run_once()
        await pubsub.drain()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.FAILED
        assert "mealplan.generate" in snapshot.failure_reason
        assert [e["stage"] for e in progress] == ["failed"]
        assert [e["eventType"] for e in lifecycle] == ["failed"]


class TestRetries:
    """Retry policy as seen by subscribers"""

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(
        self, service, pool, pubsub, recorder, extraction_responses
    ):
        """Two failed attempts followed by success emit one terminal event"""
        extraction_responses["/parse-ingredients"] = [
            httpx.Response(502, text="bad gateway"),
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json=PARSED),
        ]
        job_id = await service.submit(ingredient_operation())
        progress, lifecycle = await follow(service, recorder, job_id)

        await pool.start()
        await wait_until(lambda: lifecycle)
        await pool.stop()
        await pubsub.drain()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.attempts == 3
        assert snapshot.result == PARSED

        assert lifecycle == [
            {
                "jobId": str(job_id),
                "eventType": "completed",
                "attempts": 3,
                "result": PARSED,
            }
        ]
        assert [e["stage"] for e in progress].count("failed") == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_job(
        self, service, pool, pubsub, recorder, extraction_responses, settings
    ):
        extraction_responses["/parse-ingredients"] = [
            httpx.Response(500, text="internal error")
        ]
        job_id = await service.submit(ingredient_operation())
        _, lifecycle = await follow(service, recorder, job_id)

        await pool.start()
        await wait_until(lambda: lifecycle)
        await pool.stop()
        await pubsub.drain()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.FAILED
        assert snapshot.attempts == settings.job_max_attempts
        assert len(lifecycle) == 1
        assert lifecycle[0]["eventType"] == "failed"
        assert lifecycle[0]["attempts"] == settings.job_max_attempts

    @pytest.mark.asyncio
    async def test_retry_looks_active_to_submitter(
        self,
        database,
        store,
        pubsub,
        handlers,
        operations,
        settings,
        service,
        extraction_responses,
    ):
        extraction_responses["/parse-ingredients"] = [httpx.Response(503)]
        slow_settings = settings.model_copy(update={"job_backoff_base_ms": 60_000})
        broker = Broker(database, slow_settings)
        pool = WorkerPool(broker, store, pubsub, handlers, operations, slow_settings)
        job_id = uuid4()
        await broker.enqueue(Operation(**ingredient_operation()), job_id)

        await pool.run_once()

        snapshot = await service.get_job(job_id)
        assert snapshot.status == JobStatus.ACTIVE
        assert snapshot.queue_status == JobStatus.PENDING
        assert snapshot.attempts == 1
        broker.close()


class TestPool:
    """Pool lifecycle"""

    @pytest.mark.asyncio
    async def test_processes_many_jobs_concurrently(self, service, pool, pubsub):
        completed = []
        await pubsub.subscribe_pattern(
            "job:*:events", lambda topic, event: completed.append(event["jobId"])
        )
        job_ids = [await service.submit(voice_operation()) for _ in range(6)]

        await pool.start()
        await wait_until(lambda: len(completed) == len(job_ids))
        await pool.stop()

        assert sorted(completed) == sorted(str(job_id) for job_id in job_ids)
        for job_id in job_ids:
            assert (await service.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, pool):
        await pool.start()
        with pytest.raises(RuntimeError):
            await pool.start()
        await pool.stop()

    @pytest.mark.asyncio
    async def test_stop_idle_pool_is_prompt(self, pool):
        await pool.start()
        await asyncio.sleep(0.05)

        await asyncio.wait_for(pool.stop(), timeout=1)

        assert pool.running is False
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_run_forever_returns_after_stop(self, pool):
        runner = asyncio.create_task(pool.run_forever())
        await asyncio.sleep(0.05)

        await pool.stop()

        await asyncio.wait_for(runner, timeout=1)

    @pytest.mark.asyncio
    async def test_request_stop_shuts_down_run_forever(self, pool):
        """A stop request (as sent by SIGTERM) drains the pool and returns"""
        runner = asyncio.create_task(pool.run_forever())
        await asyncio.sleep(0.05)

        pool.request_stop()
        await asyncio.wait_for(runner, timeout=1)

        assert pool.running is False
        assert pool.in_flight == 0


class TestRecovery:
    """Expired lease recovery"""

    @pytest.mark.asyncio
    async def test_exhausted_lease_publishes_failed_event(
        self, database, store, pubsub, handlers, operations, settings, recorder
    ):
        expiring = settings.model_copy(
            update={"job_visibility_timeout_s": 0, "job_max_attempts": 1}
        )
        broker = Broker(database, expiring)
        pool = WorkerPool(broker, store, pubsub, handlers, operations, expiring)
        job_id = uuid4()
        await broker.enqueue(Operation(**ingredient_operation()), job_id)
        await broker.lease("worker-crashed")
        lifecycle, on_event = recorder()
        await pubsub.subscribe(Topics.job_events(job_id), on_event)
        await asyncio.sleep(0.01)

        assert await pool.recover_expired() == 1
        await pubsub.drain()

        assert lifecycle == [
            {
                "jobId": str(job_id),
                "eventType": "failed",
                "attempts": 1,
                "error": "Lease expired",
            }
        ]
        assert (await store.get(job_id)).status == JobStatus.FAILED
        broker.close()

    @pytest.mark.asyncio
    async def test_superseded_lease_does_not_complete_job(
        self, database, store, pubsub, handlers, operations, settings
    ):
        """A worker finishing after its lease was handed on leaves the job alone"""
        expiring = settings.model_copy(update={"job_visibility_timeout_s": 0})
        broker = Broker(database, expiring)
        pool = WorkerPool(broker, store, pubsub, handlers, operations, expiring)
        job_id = uuid4()
        await broker.enqueue(Operation(**voice_operation()), job_id)
        stale = await broker.lease("worker-a")
        await asyncio.sleep(0.01)
        await broker.requeue_expired()
        current = await broker.lease("worker-b")

        await pool.process(stale)

        snapshot = await store.get(job_id)
        assert snapshot.queue_status == JobStatus.ACTIVE
        assert snapshot.attempts == current.attempt
        assert snapshot.result is None
        broker.close()
