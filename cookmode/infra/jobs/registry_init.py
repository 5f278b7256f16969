"""
Handler registry initialization.

Builds the registry mapping each operation type to its handler. The registry
is constructed explicitly by the runtime and frozen once populated.
"""

from cookmode.collaborators.extraction import ExtractionClient
from cookmode.collaborators.usage import UsageRepository
from cookmode.config.logging import get_logger
from cookmode.core.registries import HandlerRegistry
from cookmode.infra.jobs.handlers import (
    IngredientParseHandler,
    RecipeExtractHandler,
    VoiceTrackHandler,
)
from cookmode.infra.jobs.operations import INGREDIENT_PARSE, RECIPE_EXTRACT, VOICE_TRACK

logger = get_logger(__name__)


def build_handler_registry(
    extraction: ExtractionClient, usage: UsageRepository
) -> HandlerRegistry:
    """Register all job handlers and freeze the registry."""
    registry = HandlerRegistry()

    # Extraction service handlers
    registry.register(RECIPE_EXTRACT, RecipeExtractHandler(extraction))
    registry.register(INGREDIENT_PARSE, IngredientParseHandler(extraction))

    # Usage accounting
    registry.register(VOICE_TRACK, VoiceTrackHandler(usage))

    registry.freeze()
    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
