"""
Operation handlers.

Each handler runs its operation as a sequence of named stages. After a
stage's work is done the handler reports it through the JobContext, which
publishes a ProgressEvent on the job's progress topic and records the
progress in the job store. Handlers may run more than once for the same job
(a lease can expire while they work), so every side effect they trigger is
keyed by the job id.
"""

from typing import Any
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cookmode.collaborators.extraction import ExtractionClient
from cookmode.collaborators.usage import UsageRepository
from cookmode.config.logging import get_logger
from cookmode.core.exceptions import TerminalHandlerError
from cookmode.infra.jobs.operations import INGREDIENT_PARSE, RECIPE_EXTRACT, VOICE_TRACK
from cookmode.infra.jobs.schemas import (
    IngredientParsePayload,
    LeasedJob,
    LifecycleEvent,
    ParsedIngredient,
    ProgressEvent,
    RecipeExtractPayload,
    VoiceTrackPayload,
)
from cookmode.infra.jobs.store import JobStore
from cookmode.infra.pubsub.bus import PubSub, publish_best_effort
from cookmode.infra.pubsub.topics import Topics

logger = get_logger(__name__)


class JobContext:
    """Per-lease view of a job handed to its handler."""

    def __init__(self, job: LeasedJob, store: JobStore, pubsub: PubSub):
        self.job = job
        self.store = store
        self.pubsub = pubsub
        self.progress = 0
        self.stage: str | None = None

    @property
    def job_id(self) -> UUID:
        return self.job.id

    @property
    def attempt(self) -> int:
        return self.job.attempt

    async def report(
        self, stage: str, progress: int, message: str | None = None, **data: Any
    ) -> None:
        """Announce a finished stage. Progress never goes backwards."""
        progress = max(self.progress, min(100, progress))
        event = ProgressEvent(
            job_id=self.job_id,
            stage=stage,
            progress=progress,
            message=message,
            data=data or None,
        )
        await self.publish(Topics.job_progress(self.job_id), event)
        await self.store.update_progress(
            self.job_id, progress, stage, worker_id=self.job.worker_id
        )
        self.progress = progress
        self.stage = stage

    async def report_failure(self, message: str, error: BaseException) -> None:
        """Publish the failed stage; the reached progress is kept."""
        event = ProgressEvent(
            job_id=self.job_id,
            stage="failed",
            progress=self.progress,
            message=message,
            error=str(error) or error.__class__.__name__,
        )
        await self.publish(Topics.job_progress(self.job_id), event)

    async def publish(self, topic: str, event: Any) -> int:
        return await publish_best_effort(self.pubsub, topic, event)


class StagedHandler:
    """
    Base class for handlers: runs the stages, then announces the outcome.

    On success the terminal "completed" lifecycle event is published and the
    result returned for ack. On failure the failed stage is published and
    the error re-raised; the worker pool decides retry versus terminal.
    """

    operation_type: str = ""
    failure_message = "Job failed"

    async def handle(self, ctx: JobContext, payload: BaseModel) -> dict[str, Any]:
        try:
            result = await self.run(ctx, payload)
        except Exception as e:
            logger.warning(
                "Handler stage failed",
                stage=ctx.stage,
                progress=ctx.progress,
                error=str(e),
            )
            await ctx.report_failure(self.failure_message, e)
            raise

        await ctx.publish(
            Topics.job_events(ctx.job_id),
            LifecycleEvent(
                job_id=ctx.job_id,
                event_type="completed",
                attempts=ctx.attempt,
                result=result,
            ),
        )
        return result

    async def run(self, ctx: JobContext, payload: BaseModel) -> dict[str, Any]:
        raise NotImplementedError


class RecipeExtractHandler(StagedHandler):
    """
    Job handler for importing a recipe from a URL.

    Stages: extracting -> enriching -> embedding -> storing -> completed.
    The extraction service performs the heavy lifting in one call keyed by
    the job id; the later stages mark the milestones of that pipeline.
    """

    operation_type = RECIPE_EXTRACT
    failure_message = "Recipe extraction failed"

    def __init__(self, extraction: ExtractionClient):
        self.extraction = extraction

    async def run(
        self, ctx: JobContext, payload: RecipeExtractPayload
    ) -> dict[str, Any]:
        extracted = await self.extraction.extract_recipe(
            str(payload.url),
            str(payload.user_id) if payload.user_id else None,
            idempotency_key=str(ctx.job_id),
        )
        recipe_id = extracted.get("recipe_id")
        if not recipe_id:
            raise TerminalHandlerError("Extraction service returned no recipe id")

        await ctx.report("extracting", 20, "Recipe extracted from URL")
        await ctx.report("enriching", 40, "Recipe data enriched")
        await ctx.report("embedding", 60, "Embeddings created")
        await ctx.report("storing", 80, "Recipe stored")

        logger.info("Recipe extracted", recipe_id=recipe_id, url=str(payload.url))

        await ctx.report(
            "completed", 100, "Recipe extraction complete", recipeId=recipe_id
        )
        return {"recipeId": recipe_id}


class IngredientParseHandler(StagedHandler):
    """Job handler identifying ingredients in a pantry photo."""

    operation_type = INGREDIENT_PARSE
    failure_message = "Failed to parse ingredients"

    def __init__(self, extraction: ExtractionClient):
        self.extraction = extraction

    async def run(
        self, ctx: JobContext, payload: IngredientParsePayload
    ) -> dict[str, Any]:
        await ctx.report("analyzing", 10, "Analyzing image...")

        response = await self.extraction.parse_ingredients(
            str(payload.image_url), idempotency_key=str(ctx.job_id)
        )
        try:
            ingredients = [
                ParsedIngredient.model_validate(item)
                for item in response.get("ingredients", [])
            ]
        except (PydanticValidationError, TypeError) as e:
            raise TerminalHandlerError(f"Malformed ingredient list: {e}") from None

        await ctx.report("extracting", 70, f"Identified {len(ingredients)} ingredients")

        found = [ingredient.to_message() for ingredient in ingredients]
        await ctx.report(
            "completed",
            100,
            f"Found {len(ingredients)} ingredients",
            ingredients=found,
        )
        return {"ingredients": found}


class VoiceTrackHandler(StagedHandler):
    """Single-stage handler recording voice token usage for a user."""

    operation_type = VOICE_TRACK
    failure_message = "Failed to track voice usage"

    def __init__(self, usage: UsageRepository):
        self.usage = usage

    async def run(self, ctx: JobContext, payload: VoiceTrackPayload) -> dict[str, Any]:
        summary = await self.usage.record_token_usage(
            job_id=ctx.job_id,
            user_id=payload.user_id,
            session_id=payload.session_id,
            input_tokens=payload.input_tokens,
            output_tokens=payload.output_tokens,
        )
        await ctx.publish(Topics.voice_usage(payload.user_id), summary)

        logger.info(
            "Voice usage tracked",
            user_id=str(payload.user_id),
            input_tokens=payload.input_tokens,
            output_tokens=payload.output_tokens,
        )

        await ctx.report("completed", 100, "Voice usage recorded")
        return summary.to_message()
