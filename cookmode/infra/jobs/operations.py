"""
Operation types known to the queue and the payload model for each.
"""

from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cookmode.core.exceptions import ValidationError
from cookmode.core.registries import OperationRegistry
from cookmode.infra.jobs.schemas import (
    IngredientParsePayload,
    Operation,
    RecipeExtractPayload,
    VoiceTrackPayload,
)

RECIPE_EXTRACT = "recipe.extract"
INGREDIENT_PARSE = "ingredient.parse"
VOICE_TRACK = "voice.track"


def build_operation_registry() -> OperationRegistry:
    registry = OperationRegistry()
    registry.register(RECIPE_EXTRACT, RecipeExtractPayload)
    registry.register(INGREDIENT_PARSE, IngredientParsePayload)
    registry.register(VOICE_TRACK, VoiceTrackPayload)
    return registry


def decode_payload(
    registry: OperationRegistry, operation_type: str, payload: dict[str, Any]
) -> BaseModel:
    """Select the payload model by tag and validate the payload against it."""
    if operation_type not in registry:
        raise ValidationError(
            f"Unknown operation type: {operation_type}",
            {"type": operation_type, "known_types": registry.list()},
        )

    model = registry.get(operation_type)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid payload for {operation_type}",
            {
                "type": operation_type,
                "errors": e.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            },
        ) from None


def validate_operation(registry: OperationRegistry, raw: Any) -> Operation:
    """
    Turn untrusted input into an immutable, normalized Operation.

    Accepts an Operation or a mapping with "type" and "payload". The stored
    payload is the validated model re-serialized in wire form.
    """
    if isinstance(raw, Operation):
        operation_type, payload = raw.type, raw.payload
    elif isinstance(raw, dict):
        operation_type, payload = raw.get("type"), raw.get("payload", {})
    else:
        raise ValidationError("Operation must be an object with type and payload")

    if not isinstance(operation_type, str) or not operation_type:
        raise ValidationError("Operation type is required", {"type": operation_type})
    if not isinstance(payload, dict):
        raise ValidationError(
            "Operation payload must be an object", {"type": operation_type}
        )

    model = decode_payload(registry, operation_type, payload)
    return Operation(
        type=operation_type,
        payload=model.model_dump(mode="json", by_alias=True, exclude_none=True),
    )
