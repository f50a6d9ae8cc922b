"""Tests for JSON path access and template resolution."""

import pytest

from llm_adapter.paths import MISSING, PathStep, get_path, parse_path, set_path
from llm_adapter.templates import resolve_template, resolve_value


class TestParsePath:
    """Test path parsing."""

    def test_dotted_with_index(self):
        assert parse_path("choices[0].delta.content") == (
            PathStep("choices", 0),
            PathStep("delta"),
            PathStep("content"),
        )

    def test_empty_path(self):
        assert parse_path("") == ()

    def test_bare_index_segment(self):
        assert parse_path("[1].text") == (PathStep("", 1), PathStep("text"))

    @pytest.mark.parametrize("path", ["a[x]", "a[0][1]", "a]"])
    def test_invalid_segment(self, path):
        with pytest.raises(ValueError):
            parse_path(path)


class TestGetPath:
    """Test value lookup."""

    data = {
        "choices": [{"delta": {"content": "hi", "reasoning_content": None}}],
        "candidates": [{"content": {"parts": [{"text": "g"}]}}],
    }

    def test_nested_value(self):
        assert get_path(self.data, "choices[0].delta.content") == "hi"
        assert get_path(self.data, "candidates[0].content.parts[0].text") == "g"

    def test_missing_key(self):
        assert get_path(self.data, "choices[0].message.content") is MISSING

    def test_out_of_range(self):
        assert get_path(self.data, "choices[3].delta") is MISSING

    def test_null_is_not_missing(self):
        assert get_path(self.data, "choices[0].delta.reasoning_content") is None

    def test_index_on_non_list(self):
        assert get_path({"a": {"b": 1}}, "a[0]") is MISSING

    def test_invalid_path_is_missing(self):
        assert get_path(self.data, "choices[x]") is MISSING

    def test_missing_is_falsy(self):
        assert not MISSING


class TestSetPath:
    """Test dotted assignment."""

    def test_creates_intermediate_objects(self):
        body = {}
        set_path(body, "generationConfig.temperature", 0.5)
        assert body == {"generationConfig": {"temperature": 0.5}}

    def test_merges_into_existing(self):
        body = {"generationConfig": {"topK": 1}}
        set_path(body, "generationConfig.temperature", 0.5)
        assert body == {"generationConfig": {"topK": 1, "temperature": 0.5}}


class TestResolveTemplate:
    """Test string substitution."""

    def test_known_variables(self):
        assert resolve_template("{endpoint}/models/{model}", {"endpoint": "https://x", "model": "m"}) == "https://x/models/m"

    def test_unknown_left_verbatim(self):
        assert resolve_template("{foo} {apiKey}", {"apiKey": "k", "foo": "bar"}) == "{foo} k"

    def test_known_but_not_provided(self):
        assert resolve_template("Bearer {apiKey}", {}) == "Bearer {apiKey}"

    def test_single_pass(self):
        # 替换结果中的 {apiKey} 不再被替换
        assert resolve_template("{message}", {"message": "{apiKey}", "apiKey": "secret"}) == "{apiKey}"

    def test_bool_rendering(self):
        assert resolve_template("stream={stream}", {"stream": True}) == "stream=true"


class TestResolveValue:
    """Test typed resolution of whole-variable templates."""

    def test_temperature_stays_number(self):
        assert resolve_value("{temperature}", {"temperature": 0.7}) == 0.7

    def test_model_always_string(self):
        assert resolve_value("{model}", {"model": "123"}) == "123"

    def test_stream_is_boolean(self):
        assert resolve_value("{stream}", {"stream": "true"}) is True
        assert resolve_value("{stream}", {"stream": False}) is False

    def test_numeric_string(self):
        assert resolve_value("{message}", {"message": "42"}) == 42
        assert resolve_value("{message}", {"message": "0.5"}) == 0.5

    def test_large_number_treated_as_id(self):
        assert resolve_value("{message}", {"message": 12345678901}) == "12345678901"

    def test_mixed_template_is_string(self):
        assert resolve_value("t={temperature}", {"temperature": 0.7}) == "t=0.7"

    def test_unknown_variable(self):
        assert resolve_value("{foo}", {"foo": 1}) == "{foo}"
