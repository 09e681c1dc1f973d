"""Helpers for writing suites: tool schemas, tool code and JSON schemas.

Example:
    schema = generate_schema("get_weather", "Current weather for a city")
    tool = generate_function("get_weather", "Current weather for a city", schema)

    infer_json_schema({"name": "Ada", "tags": ["x"]})
    # {"type": "object", "properties": {"name": {"type": "string"}, ...}, "required": [...]}
"""

import json
from typing import Any

import logfire
from pydantic import BaseModel, Field
from pydantic_ai import Agent

from . import config
from .models import LocalFunction, ToolDefinition
from .prompts import INFER_FUNCTION_PROMPT, INFER_SCHEMA_PROMPT
from .providers import function_name
from .scoring import repair_json


class GeneratedFunction(BaseModel):
    code: str = Field(description="Complete Python source of the function, no Markdown fences.")


def _model_name(model: str | None) -> str:
    name = model or config.env_model_name()
    if not name:
        raise ValueError("Model name must be provided or set via MODEL_NAME env var")
    return name


def generate_schema(name: str, description: str, *, model: str | None = None) -> dict[str, Any]:
    """Ask a model for the JSON Schema of a tool's parameters."""
    with logfire.span("Generating tool schema", tool=name):
        agent = Agent(_model_name(model), output_type=str, system_prompt=INFER_SCHEMA_PROMPT)
        output = agent.run_sync(f"<NAME>{name}</NAME> <DESCRIPTION>{description}</DESCRIPTION>").output
        schema = repair_json(output)
        if not isinstance(schema, dict):
            raise ValueError(f"Expected a JSON Schema object for '{name}', got {type(schema).__name__}")
        logfire.info("Tool schema generated", tool=name, properties=list(schema.get("properties", {})))
        return schema


def generate_function(
    name: str,
    description: str,
    schema: dict[str, Any],
    *,
    model: str | None = None,
) -> ToolDefinition:
    """Ask a model to implement a local tool and wrap it as a ToolDefinition."""
    with logfire.span("Generating tool function", tool=name):
        agent = Agent(
            _model_name(model), output_type=GeneratedFunction, system_prompt=INFER_FUNCTION_PROMPT
        )
        generated = agent.run_sync(
            f"<NAME>{name}</NAME>\n<DESCRIPTION>{description}</DESCRIPTION>\n"
            f"<JSONSCHEMA>{json.dumps(schema)}</JSONSCHEMA>"
        ).output

        defined = function_name(generated.code)
        if defined != name:
            logfire.warn("Generated function name differs", expected=name, got=defined)

        return ToolDefinition(
            name=name,
            description=description,
            parameters=schema,
            implementation=LocalFunction(code=generated.code),
        )


def infer_json_schema(value: Any) -> dict[str, Any]:
    """Derive a JSON Schema from a sample JSON value.

    Arrays take their item schema from the first element, objects mark every
    key as required.
    """
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "boolean"}
    if isinstance(value, int):
        return {"type": "integer"}
    if isinstance(value, float):
        return {"type": "number"}
    if isinstance(value, str):
        return {"type": "string"}
    if isinstance(value, list):
        schema: dict[str, Any] = {"type": "array"}
        if value:
            schema["items"] = infer_json_schema(value[0])
        return schema
    if isinstance(value, dict):
        return {
            "type": "object",
            "properties": {key: infer_json_schema(item) for key, item in value.items()},
            "required": list(value),
        }
    raise TypeError(f"Cannot infer a JSON schema for {type(value).__name__}")
