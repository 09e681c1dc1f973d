"""Verification checks run against a single completion.

All checks are pure functions: they never call a model and never raise on
malformed input. Problems are reported in the returned result objects.
"""

import json
import math
from typing import Any

import jsonschema
import logfire

from .models import (
    CalledTool,
    ExpectedToolCall,
    JsonCheckResult,
    ParamMismatch,
    ToolCall,
    ToolsCallResult,
)


def _instance_path(error: jsonschema.ValidationError) -> str:
    return "".join(f"/{part}" for part in error.absolute_path)


def verify_json_valid(
    result: str,
    json_schema: dict[str, Any] | str | None = None,
    *,
    use_schema: bool = False,
    strict: bool = False,
) -> JsonCheckResult:
    """Check that ``result`` parses as JSON and, optionally, matches a schema.

    With ``strict`` the schema itself is validated against its metaschema and
    ``format`` keywords are enforced; lenient mode only checks the document.

    Examples:
        verify_json_valid('{"a":1}')  -> valid
        verify_json_valid('{a:1}')    -> invalid, error carries the parser message
        verify_json_valid('{"a":1}', {"properties": {"a": {"type": "string"}}},
                          use_schema=True) -> invalid, "/a 1 is not of type 'string'"
    """
    try:
        document = json.loads(result)
    except (json.JSONDecodeError, TypeError) as e:
        logfire.info("JSON invalid", error=str(e))
        return JsonCheckResult(valid=False, error=str(e))

    if not (use_schema and json_schema):
        logfire.info("JSON valid")
        return JsonCheckResult(valid=True)

    try:
        schema = json.loads(json_schema) if isinstance(json_schema, str) else json_schema
        validator_cls = jsonschema.validators.validator_for(schema)
        if strict:
            validator_cls.check_schema(schema)
            validator = validator_cls(schema, format_checker=validator_cls.FORMAT_CHECKER)
        else:
            validator = validator_cls(schema)
        errors = sorted(validator.iter_errors(document), key=lambda e: e.json_path)
    except Exception as e:
        logfire.warn("JSON schema error", error=str(e))
        return JsonCheckResult(valid=False, error=f"JSON schema error: {e}", schema_checked=True)

    if errors:
        message = ", ".join(f"{_instance_path(err)} {err.message}".strip() for err in errors)
        logfire.info("JSON schema invalid", errors=message)
        return JsonCheckResult(valid=False, error=message, schema_checked=True)

    logfire.info("JSON schema valid")
    return JsonCheckResult(valid=True, schema_checked=True)


# ---------------------------------------------------------------------------
# Tool-call verification
# ---------------------------------------------------------------------------


def parse_call_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any] | None:
    """Decode tool-call arguments, unwrapping up to two levels of JSON encoding.

    Returns ``None`` when the arguments cannot be decoded into an object.
    """
    if isinstance(arguments, dict):
        return arguments
    if arguments is None or not str(arguments).strip():
        return {}

    value: Any = arguments
    for _ in range(2):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    return value if isinstance(value, dict) else None


def _looks_like_json(value: str) -> bool:
    text = value.strip()
    return (text.startswith("[") and text.endswith("]")) or (
        text.startswith("{") and text.endswith("}")
    )


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _is_null(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() == "null")


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def values_match(actual: Any, expected: Any) -> bool:
    """Compare an actual argument value against an expected one.

    Strategies are tried in order and the first that applies decides:

    1. ``expected`` is an object or array (or a string holding one): compare
       canonical JSON of both sides.
    2. Same type and equal.
    3. Either side is boolean-like (``True``/``"true"``): both must be
       boolean-like with the same truth value.
    4. Either side is null-like (``None``/``"null"``): both must be.
    5. String forms are equal.
    6. Both parse as finite numbers with the same value.
    """
    if isinstance(expected, str) and _looks_like_json(expected):
        try:
            expected = json.loads(expected.strip())
        except json.JSONDecodeError:
            pass

    if isinstance(expected, (dict, list)):
        try:
            return json.dumps(actual, sort_keys=True) == json.dumps(expected, sort_keys=True)
        except TypeError:
            return False

    if type(actual) is type(expected) and actual == expected:
        return True

    actual_bool, expected_bool = _as_bool(actual), _as_bool(expected)
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual_bool is not None and actual_bool == expected_bool

    if _is_null(actual) or _is_null(expected):
        return _is_null(actual) and _is_null(expected)

    if str(actual) == str(expected):
        return True

    actual_num, expected_num = _as_number(actual), _as_number(expected)
    return actual_num is not None and actual_num == expected_num


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _check_called_tool(call: ToolCall, expected: ExpectedToolCall | None) -> CalledTool:
    detail = CalledTool(name=call.name, arguments=call.arguments)
    if expected is None:
        return detail

    actual = parse_call_arguments(call.arguments)
    if actual is None:
        logfire.warn("Could not parse tool arguments", tool=call.name)
        actual = {}
    detail.actual_params = actual

    if expected.parameters:
        try:
            schema = (
                json.loads(expected.parameters)
                if isinstance(expected.parameters, str)
                else expected.parameters
            )
            detail.expected_params = schema.get("properties", {})
            detail.missing_params = [p for p in schema.get("required", []) if p not in actual]
            detail.arguments_valid = not detail.missing_params
        except (json.JSONDecodeError, AttributeError):
            logfire.warn("Could not validate arguments schema", tool=call.name)
            detail.arguments_valid = None
        if detail.missing_params:
            logfire.info(
                "Missing required parameters", tool=call.name, missing=detail.missing_params
            )

    if expected.expected_params:
        detail.expected_values = expected.expected_params
        for param, expected_value in expected.expected_params.items():
            if _is_blank(expected_value):
                continue
            actual_value = actual.get(param)
            if not values_match(actual_value, expected_value):
                detail.mismatches.append(
                    ParamMismatch(param=param, expected=expected_value, actual=actual_value)
                )
        detail.expected_values_valid = not detail.mismatches
        for mismatch in detail.mismatches:
            logfire.info(
                "Parameter mismatch",
                tool=call.name,
                param=mismatch.param,
                expected=mismatch.expected,
                actual=mismatch.actual,
            )

    return detail


def verify_tools_called(
    tool_calls: list[ToolCall], expected_tools: list[ExpectedToolCall]
) -> ToolsCallResult:
    """Check that every expected tool was called; extra calls are allowed.

    Argument checks (required parameters present, expected values matching)
    are reported per called tool and do not change ``success``.
    """
    expected_names = [t.name for t in expected_tools]
    called = [call for call in tool_calls if call.name]
    called_names = {call.name for call in called}

    if not called:
        logfire.info("No tools were called", expected=expected_names)
        return ToolsCallResult(success=False, missing=expected_names)

    missing = [name for name in expected_names if name not in called_names]
    if missing:
        logfire.info("Expected tools missing", missing=missing)
        return ToolsCallResult(
            success=False,
            called_tools=[CalledTool(name=c.name, arguments=c.arguments) for c in called],
            missing=missing,
        )

    by_name = {t.name: t for t in expected_tools}
    details = [_check_called_tool(call, by_name.get(call.name)) for call in called]
    logfire.info("Tools call valid", called=sorted(called_names))
    return ToolsCallResult(success=True, called_tools=details)
