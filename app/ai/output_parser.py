"""Detect and parse structured content (JSON, XML, markdown) in model output."""

import json
import re
import xml.etree.ElementTree as ET
from typing import Any, Literal

from pydantic import BaseModel

OutputType = Literal["json", "xml", "markdown", "text"]

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_EMBEDDED_JSON = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")
_MARKDOWN_MARKERS = ("##", "**", "```", "- ", "1. ")


class ParsedOutput(BaseModel):
    """Result of ``parse_output``."""

    type: OutputType
    is_structured: bool
    data: Any
    formatted: str
    errors: list[str] | None = None


def try_parse_json(text: str) -> tuple[bool, Any, str | None]:
    """Parse JSON directly, from a fenced code block, or embedded in prose.

    Returns:
        Tuple of (success, data, error message)
    """
    try:
        return True, json.loads(text), None
    except json.JSONDecodeError:
        pass

    block = _CODE_BLOCK.search(text)
    if block:
        try:
            return True, json.loads(block.group(1).strip()), None
        except json.JSONDecodeError:
            return False, None, "Invalid JSON in code block"

    embedded = _EMBEDDED_JSON.search(text)
    if embedded:
        try:
            return True, json.loads(embedded.group(0)), None
        except json.JSONDecodeError:
            return False, None, "Invalid JSON structure"

    return False, None, "No valid JSON found"


def _element_to_dict(element: ET.Element) -> dict[str, Any]:
    node: dict[str, Any] = {}
    if element.attrib:
        node["@attributes"] = dict(element.attrib)

    children = list(element)
    if not children:
        node["#text"] = element.text or ""
        return node

    for child in children:
        value = _element_to_dict(child)
        if child.tag in node:
            if not isinstance(node[child.tag], list):
                node[child.tag] = [node[child.tag]]
            node[child.tag].append(value)
        else:
            node[child.tag] = value
    return node


def try_parse_xml(text: str) -> tuple[bool, Any, str | None]:
    """Parse an XML document into nested dicts keyed by tag name."""
    try:
        root = ET.fromstring(text.strip())
    except ET.ParseError:
        return False, None, "XML parsing error"
    return True, {root.tag: _element_to_dict(root)}, None


def detect_structured_format(text: str) -> OutputType:
    """Guess the format of a model response from its shape."""
    trimmed = text.strip()

    if (
        (trimmed.startswith("{") and trimmed.endswith("}"))
        or (trimmed.startswith("[") and trimmed.endswith("]"))
        or "```json" in trimmed
    ):
        return "json"

    if (
        trimmed.startswith("<")
        and trimmed.endswith(">")
        and "</" in trimmed
        and "<html>" not in trimmed
    ):
        return "xml"

    if any(marker in trimmed for marker in _MARKDOWN_MARKERS):
        return "markdown"

    return "text"


def parse_output(text: str) -> ParsedOutput:
    """Parse a model response into structured data where possible.

    Failed JSON/XML parses degrade to plain text with ``errors`` set.
    """
    output_type = detect_structured_format(text)

    if output_type == "json":
        ok, data, error = try_parse_json(text)
        if ok:
            return ParsedOutput(
                type="json",
                is_structured=True,
                data=data,
                formatted=json.dumps(data, indent=2, ensure_ascii=False),
            )
        return ParsedOutput(
            type="text", is_structured=False, data=text, formatted=text, errors=[error]
        )

    if output_type == "xml":
        ok, data, error = try_parse_xml(text)
        if ok:
            return ParsedOutput(type="xml", is_structured=True, data=data, formatted=text)
        return ParsedOutput(
            type="text", is_structured=False, data=text, formatted=text, errors=[error]
        )

    if output_type == "markdown":
        return ParsedOutput(type="markdown", is_structured=True, data=text, formatted=text)

    return ParsedOutput(type="text", is_structured=False, data=text, formatted=text)


def load_schema(schema: str | dict[str, Any] | None) -> dict[str, Any] | None:
    """Accept a schema as a dict or a JSON string; anything unreadable is ignored."""
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except json.JSONDecodeError:
            return None
    return schema if isinstance(schema, dict) else None


def check_type_and_required(data: Any, schema: dict[str, Any] | None) -> list[str]:
    """Check ``data`` against the top-level ``type`` and ``required`` keys of a schema.

    Nothing else in the schema is looked at. Returns error messages.
    """
    if not isinstance(schema, dict):
        return []

    errors = []
    expected = schema.get("type")
    if expected:
        actual = {
            dict: "object", list: "array", str: "string", bool: "boolean",
            int: "number", float: "number", type(None): "null",
        }.get(type(data), type(data).__name__)
        is_integer = isinstance(data, int) and not isinstance(data, bool)
        if actual != expected and not (expected == "integer" and is_integer):
            errors.append(f"Expected type {expected}, got {actual}")

    required = schema.get("required")
    if isinstance(required, list) and isinstance(data, dict):
        for prop in required:
            if prop not in data:
                errors.append(f"Missing required property: {prop}")

    return errors
