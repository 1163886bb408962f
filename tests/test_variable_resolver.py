"""Tests for {{placeholder}} interpolation of step configs."""

import json

import pytest

from flowbot.services.variable_resolver import VariableResolutionError
from flowbot.services.variable_resolver import interpolate
from flowbot.services.variable_resolver import interpolate_string
from flowbot.services.variable_resolver import resolve_variable_path


class TestInterpolateString:
    def test_replaces_known_variable(self):
        assert interpolate_string("Hello {{name}}!", {"name": "Ada"}) == "Hello Ada!"

    def test_whitespace_inside_braces(self):
        assert interpolate_string("{{ name }}", {"name": "Ada"}) == "Ada"

    def test_unknown_placeholder_left_verbatim(self):
        result = interpolate_string("Hi {{missing}} and {{name}}", {"name": "Ada"})
        assert result == "Hi {{missing}} and Ada"

    def test_text_without_placeholders_is_unchanged(self):
        assert interpolate_string("plain text", {"x": 1}) == "plain text"

    def test_dotted_path_into_nested_mapping(self):
        context = {"webhook": {"payload": {"action": "opened"}}}
        assert interpolate_string("{{webhook.payload.action}}", context) == "opened"

    def test_list_index_access(self):
        context = {"emails": [{"subject": "Invoice"}, {"subject": "Other"}]}
        assert interpolate_string("{{emails.1.subject}}", context) == "Other"

    def test_non_string_values_are_stringified(self):
        context = {"count": 3, "flag": True, "data": {"a": 1}, "nothing": None}
        result = interpolate_string("{{count}}|{{flag}}|{{data}}|{{nothing}}", context)
        assert result == '3|True|{"a": 1}|'

    def test_substituted_values_are_not_rescanned(self):
        context = {"a": "{{b}}", "b": "nested"}
        assert interpolate_string("{{a}}", context) == "{{b}}"

    @pytest.mark.parametrize(
        "template",
        ["Summarize: {{content}}", "{{missing}} {{name}}", "{{data.key}} / {{emails.0.subject}}", "no vars"],
    )
    def test_interpolation_is_idempotent(self, template):
        context = {"content": "hello", "name": "Ada", "data": {"key": "v"}, "emails": [{"subject": "s"}]}
        once = interpolate_string(template, context)
        assert interpolate_string(once, context) == once


class TestContentAlias:
    def test_content_key_wins(self):
        context = {"content": "c", "summary": "s", "text": "t"}
        assert interpolate_string("{{content}}", context) == "c"

    def test_falls_back_to_summary(self):
        assert interpolate_string("{{content}}", {"summary": "s", "text": "t"}) == "s"

    def test_falls_back_to_text(self):
        assert interpolate_string("{{content}}", {"text": "t"}) == "t"

    def test_empty_content_uses_fallback(self):
        assert interpolate_string("{{content}}", {"content": "", "summary": "s"}) == "s"

    def test_falls_back_to_context_json(self):
        context = {"x": 1}
        assert json.loads(interpolate_string("{{content}}", context)) == {"x": 1}

    def test_previous_output_is_whole_context(self):
        context = {"x": 1, "y": "two"}
        assert json.loads(interpolate_string("{{previous_output}}", context)) == context


class TestInterpolateTree:
    def test_recurses_into_mappings_and_lists(self):
        config = {
            "title": "Report for {{name}}",
            "tags": ["{{tag}}", "static"],
            "nested": {"body": "{{content}}"},
        }
        context = {"name": "Ada", "tag": "weekly", "content": "hello"}
        assert interpolate(config, context) == {
            "title": "Report for Ada",
            "tags": ["weekly", "static"],
            "nested": {"body": "hello"},
        }

    def test_non_string_leaves_pass_through(self):
        config = {"max_tokens": 100, "enabled": False, "ratio": 0.5, "nothing": None}
        assert interpolate(config, {"max_tokens": "ignored"}) == config

    def test_input_is_not_mutated(self):
        config = {"body": "{{name}}", "items": ["{{name}}"]}
        interpolate(config, {"name": "Ada"})
        assert config == {"body": "{{name}}", "items": ["{{name}}"]}


class TestResolveVariablePath:
    def test_returns_raw_value(self):
        assert resolve_variable_path("data", {"data": {"a": [1, 2]}}) == {"a": [1, 2]}

    def test_missing_head_raises(self):
        with pytest.raises(VariableResolutionError):
            resolve_variable_path("missing", {})

    def test_missing_field_raises(self):
        with pytest.raises(VariableResolutionError):
            resolve_variable_path("data.b", {"data": {"a": 1}})

    def test_bad_list_index_raises(self):
        with pytest.raises(VariableResolutionError):
            resolve_variable_path("items.5", {"items": [1]})
