"""Make arbitrary values safe to store in trace events and span tags.

Event payloads end up in a JSON column, so everything is reduced to
JSON-serializable primitives, long strings are clipped and credential-looking
keys are masked.
"""

import inspect
import traceback
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import UUID

# Clip long strings in span tags
MAX_STRING_LENGTH = 200

# Event payloads carry prompts and responses, allow more room
MAX_EVENT_STRING_LENGTH = 4000

MAX_COLLECTION_ITEMS = 20

MAX_DEPTH = 4

SENSITIVE_FIELDS = (
    "password", "secret", "api_key", "apikey", "authorization",
    "access_token", "refresh_token", "credential",
)

REDACTED = "[REDACTED]"


def is_sensitive_field(name: str) -> bool:
    """Check if a key looks like it holds a credential."""
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELDS)


def clip(text: str, limit: int = MAX_STRING_LENGTH) -> str:
    """Cut a string down to ``limit`` characters, noting the original length."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text)} chars)"


def sanitize_value(
    value: Any,
    field_name: str = "",
    depth: int = 0,
    max_string: int = MAX_STRING_LENGTH,
) -> Any:
    """Reduce a value to JSON-safe primitives."""
    if field_name and is_sensitive_field(field_name):
        return REDACTED

    if depth > MAX_DEPTH:
        return f"<{type(value).__name__}>"

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return clip(value, max_string)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (UUID, datetime, date)):
        return str(value) if isinstance(value, UUID) else value.isoformat()
    if isinstance(value, bytes):
        return f"<bytes: {len(value)} bytes>"

    if isinstance(value, Mapping):
        items = list(value.items())
        result = {
            str(k): sanitize_value(v, str(k), depth + 1, max_string)
            for k, v in items[:MAX_COLLECTION_ITEMS]
        }
        if len(items) > MAX_COLLECTION_ITEMS:
            result["_truncated"] = len(items)
        return result

    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        result = [sanitize_value(v, "", depth + 1, max_string) for v in items[:MAX_COLLECTION_ITEMS]]
        if len(items) > MAX_COLLECTION_ITEMS:
            result.append(f"... {len(items) - MAX_COLLECTION_ITEMS} more")
        return result

    if hasattr(value, "model_dump"):
        return sanitize_value(value.model_dump(), field_name, depth + 1, max_string)

    return f"<{type(value).__name__}>"


def sanitize_event_data(data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Prepare a trace event payload for the JSON column."""
    if not data:
        return {}
    return sanitize_value(dict(data), max_string=MAX_EVENT_STRING_LENGTH)


def format_exception(error: BaseException) -> dict[str, Any]:
    """Error details for an ``error`` event, stack trace included."""
    return {
        "error_type": type(error).__name__,
        "message": clip(str(error), 1000),
        "stack": clip(
            "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            MAX_EVENT_STRING_LENGTH,
        ),
    }


def build_input_summary(
    func: Callable,
    args: tuple,
    kwargs: dict,
    capture_args: list[str] | None = None,
) -> dict:
    """Map a call's arguments to names and sanitize them.

    Args:
        func: The function being called
        args: Positional arguments
        kwargs: Keyword arguments
        capture_args: If given, only these argument names are kept

    Returns:
        Dict of argument name to sanitized value
    """
    try:
        params = list(inspect.signature(func).parameters)
    except (ValueError, TypeError):
        params = []

    named: dict[str, Any] = {}
    for i, arg in enumerate(args):
        name = params[i] if i < len(params) else f"arg_{i}"
        if name in ("self", "cls"):
            continue
        named[name] = arg
    named.update(kwargs)

    return {
        name: sanitize_value(value, field_name=name)
        for name, value in named.items()
        if capture_args is None or name in capture_args
    }
