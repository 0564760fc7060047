"""Tests for lenient JSON parsing of model output."""

from course_structure_generator.tools.json_repair import attempt_repair, parse_json_object, strip_fences


class TestStripFences:
    def test_json_fence(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_fences(' {"a": 1} ') == '{"a": 1}'


class TestAttemptRepair:
    def test_empty(self):
        assert attempt_repair("   ") is None

    def test_trailing_comma(self):
        assert attempt_repair('{"a": [1, 2,], }') == '{"a": [1, 2]}'

    def test_smart_quotes(self):
        assert attempt_repair("{“a”: 1}") == '{"a": 1}'


class TestParseJsonObject:
    def test_direct(self):
        assert parse_json_object('{"lessons": []}') == ({"lessons": []}, None)

    def test_fenced(self):
        payload, error = parse_json_object('```json\n{"a": 1}\n```')
        assert payload == {"a": 1}
        assert error is None

    def test_surrounding_prose(self):
        payload, _ = parse_json_object('Here is the outline: {"a": {"b": 2}} Hope it helps.')
        assert payload == {"a": {"b": 2}}

    def test_repair(self):
        payload, _ = parse_json_object('{"a": [1, 2,],}')
        assert payload == {"a": [1, 2]}

    def test_top_level_array_rejected(self):
        payload, error = parse_json_object("[1, 2]")
        assert payload is None
        assert "expected object" in error

    def test_empty(self):
        assert parse_json_object("``` ```") == (None, "Empty output")

    def test_truncated(self):
        payload, error = parse_json_object('{"lessons": [{"title": "Cut')
        assert payload is None
        assert error
