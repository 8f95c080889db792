import json
import re
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

_NON_EMPTY = {"type": "string", "pattern": r"\S"}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

WORKFLOW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "description", "trigger_type", "steps"],
    "properties": {
        "title": _NON_EMPTY,
        "description": {"type": "string"},
        "trigger_type": _NON_EMPTY,
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["step_type", "title", "assignee_type"],
                "properties": {
                    "step_type": _NON_EMPTY,
                    "title": _NON_EMPTY,
                    "assignee_type": _NON_EMPTY,
                    "instructions": {"type": "string"},
                    "due_offset_days": {"type": "number"},
                },
            },
        },
    },
}

TEMPLATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "description", "category", "required_modules", "fields"],
    "properties": {
        "title": _NON_EMPTY,
        "description": {"type": "string"},
        "category": _NON_EMPTY,
        "required_modules": _STRING_LIST,
        "fields": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["label", "field_type", "is_required", "sort_order"],
                "properties": {
                    "label": _NON_EMPTY,
                    "field_type": _NON_EMPTY,
                    "is_required": {"type": "boolean"},
                    "helper_text": {"type": "string"},
                    "options": _STRING_LIST,
                    "sort_order": {"type": "number"},
                },
            },
        },
    },
}

INSIGHT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["summary", "risks", "opportunities", "recommended_actions"],
    "properties": {
        "summary": {"type": "string"},
        "risks": _STRING_LIST,
        "opportunities": _STRING_LIST,
        "recommended_actions": _STRING_LIST,
    },
}

OUTPUT_SCHEMAS: dict[str, dict[str, Any]] = {
    "workflow_copilot": WORKFLOW_SCHEMA,
    "template_copilot": TEMPLATE_SCHEMA,
    "insight_summary": INSIGHT_SCHEMA,
}

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


class OutputValidationError(Exception):
    pass


@dataclass(frozen=True)
class ValidatedOutput:
    text: str
    data: dict[str, Any]


def parse_model_json(output: str) -> Any:
    """Parse model output as JSON, unwrapping a surrounding code fence."""
    trimmed = output.strip()
    if trimmed.startswith("```") and trimmed.endswith("```") and len(trimmed) > 3:
        trimmed = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", trimmed))
    return json.loads(trimmed)


def _error_path(error: Any) -> str:
    path = ""
    for part in error.absolute_path:
        path += f"[{part}]" if isinstance(part, int) else (f".{part}" if path else str(part))
    return path


def validate_output(task_type: str, output: str) -> ValidatedOutput:
    schema = OUTPUT_SCHEMAS.get(task_type)
    if schema is None:
        raise OutputValidationError(f"No output schema for task type {task_type}")

    try:
        parsed = parse_model_json(output)
    except ValueError as exc:
        raise OutputValidationError("Model output is not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise OutputValidationError("Model output must be a JSON object")

    first = best_match(Draft202012Validator(schema).iter_errors(parsed))
    if first is not None:
        path = _error_path(first)
        message = f"{path}: {first.message}" if path else first.message
        raise OutputValidationError(message)
    return ValidatedOutput(text=output, data=parsed)
