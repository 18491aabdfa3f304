# tests/test_keywords.py
"""
Tests for keyword values, property access and keyword stacks.
"""

from dataclasses import dataclass

import pytest

from waspect import keywords
from waspect.errors import ResolutionError


@dataclass
class Sample:
    result_type: str
    total_params: int


class TestNames:

    @pytest.mark.parametrize("fn,arg,expected", [
        (keywords.capitalize, "call", "Call"),
        (keywords.capitalize, "", ""),
        (keywords.lower_first, "Func", "func"),
        (keywords.snake_case, "resultType", "result_type"),
        (keywords.camel_case, "total_params", "totalParams"),
    ])
    def test_conversions(self, fn, arg, expected):
        assert fn(arg) == expected


class TestValues:

    @pytest.mark.parametrize("value,text", [
        (None, ""),
        (True, "true"),
        ("$f", "$f"),
        (3, "3"),
        (["a", "b"], "[a,b]"),
        ({"Name": "x", "Order": 0}, "{Name:x,Order:0}"),
    ])
    def test_to_string(self, value, text):
        assert keywords.to_string(value) == text

    def test_dataclass_fields_are_camel_case(self):
        assert keywords.to_string(Sample("i32", 2)) == "{ResultType:i32,TotalParams:2}"

    def test_to_list(self):
        assert keywords.to_list(None) == []
        assert keywords.to_list(["a"]) == ["a"]
        assert keywords.to_list({"A": 1, "B": 2}) == [1, 2]
        assert keywords.to_list("x") == ["x"]

    def test_prop_first_letter_is_case_insensitive(self):
        assert keywords.prop({"Name": "x"}, "name") == "x"
        assert keywords.prop({"name": "x"}, "Name") == "x"
        assert keywords.prop({"Name": "x"}, "other") is None

    def test_prop_on_record(self):
        assert keywords.prop(Sample("i32", 2), "resultType") == "i32"
        assert keywords.prop(Sample("i32", 2), "TotalParams") == 2

    def test_prop_on_string_fails(self):
        with pytest.raises(ResolutionError, match="non-object"):
            keywords.prop("text", "name")

    def test_index(self):
        assert keywords.index(["a", "b"], 1) == "b"
        assert keywords.index(["a"], 4) is None
        assert keywords.index("ab", 0) == "a"

    def test_index_out_of_string(self):
        with pytest.raises(ResolutionError, match="out of range"):
            keywords.index("ab", 2)

    def test_index_on_object_fails(self):
        with pytest.raises(ResolutionError, match="non-array"):
            keywords.index({"A": 1}, 0)

    @pytest.mark.parametrize("value,n", [(None, 0), ("abc", 3), ([1, 2], 2), ({"A": 1}, 1)])
    def test_length(self, value, n):
        assert keywords.length(value) == n

    def test_join_metadata_left_wins(self):
        assert keywords.join_metadata({"A": 1}, {"A": 2, "B": 3}) == {"A": 1, "B": 3}
        assert keywords.join_metadata(None, {"B": 3}) == {"B": 3}


class TestStack:

    def test_first_map_wins(self):
        stack = keywords.KeywordStack([{"a": 1}, {"a": 2, "b": 3}])
        assert stack.get("a") == 1
        assert stack.get("b") == 3
        assert stack.get("c") is None

    def test_none_maps_are_skipped(self):
        stack = keywords.KeywordStack([None, {"a": 1}])
        assert len(stack.maps) == 1
        assert "a" in stack

    def test_push_and_extend_leave_original(self):
        stack = keywords.KeywordStack([{"a": 1}])
        pushed = stack.push({"a": 0})
        extended = stack.extend([{"z": 9}])
        assert pushed.get("a") == 0
        assert extended.get("z") == 9
        assert stack.get("a") == 1 and stack.get("z") is None
