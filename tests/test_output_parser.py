"""Unit tests for structured output parsing."""

from app.ai.output_parser import check_type_and_required, load_schema, parse_output


class TestParseOutput:
    """Tests for format detection and parsing."""

    def test_fenced_json(self):
        """JSON inside a code fence is parsed."""
        parsed = parse_output('Here you go:\n```json\n{"a": 1}\n```')

        assert parsed.type == "json"
        assert parsed.data == {"a": 1}

    def test_broken_json_degrades_to_text(self):
        """Unparseable JSON comes back as text with an error."""
        parsed = parse_output('{"a": 1,}')

        assert parsed.type == "text"
        assert parsed.is_structured is False
        assert parsed.errors == ["Invalid JSON structure"]

    def test_xml(self):
        """XML becomes nested dicts keyed by tag."""
        parsed = parse_output("<note><to>Ana</to></note>")

        assert parsed.data == {"note": {"to": {"#text": "Ana"}}}


class TestTypeAndRequiredCheck:
    """Tests for the top-level type and required check."""

    def test_booleans_are_not_integers(self):
        """true does not satisfy an integer type."""
        assert check_type_and_required(True, {"type": "integer"}) == [
            "Expected type integer, got boolean"
        ]
        assert check_type_and_required(3, {"type": "integer"}) == []

    def test_missing_required_properties(self):
        """Each missing required key is reported."""
        errors = check_type_and_required(
            {"name": "x"}, {"type": "object", "required": ["name", "age", "email"]}
        )

        assert errors == ["Missing required property: age", "Missing required property: email"]

    def test_schema_loading(self):
        """Schemas arrive as dicts or JSON strings; anything else is ignored."""
        assert load_schema('{"type": "array"}') == {"type": "array"}
        assert load_schema("not json") is None
        assert load_schema(None) is None
        assert check_type_and_required([1], None) == []
