"""Function definitions offered to the generation service.

Each definition carries a JSON Schema for its arguments. Calls returned by the
generation service are validated against that schema before dispatch.
"""

from typing import Any

import jsonschema
from pydantic import BaseModel, Field

from taskpilot.core.errors import ArgumentValidationError
from taskpilot.core.models import FunctionCall


class FunctionDef(BaseModel):
    """Declared action or command the generation service may call."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


def object_schema(
    properties: dict[str, Any],
    required: list[str] | None = None,
) -> dict[str, Any]:
    """Shorthand for an object schema that tolerates extra keys."""
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def validate_call(definition: FunctionDef, call: FunctionCall) -> None:
    """Validate call arguments against the definition schema.

    Raises:
        ArgumentValidationError: If the arguments violate the schema
    """
    try:
        jsonschema.validate(call.args, definition.parameters)
    except jsonschema.ValidationError as e:
        location = " -> ".join(str(p) for p in e.absolute_path)
        detail = f"{e.message} (at {location})" if location else e.message
        raise ArgumentValidationError(definition.name, detail) from e
