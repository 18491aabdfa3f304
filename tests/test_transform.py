# tests/test_transform.py
"""
Tests for loading transformation descriptions.
"""

import pytest

from waspect.errors import TransformationError
from waspect.transform import (
    Argument,
    ImportSpec,
    from_dict,
    load_transformation,
    parse_transformation,
)
from tests.conftest import COUNTER_TRANSFORMATION, EMPTY_TRANSFORMATION


class TestParse:

    def test_empty(self):
        t = parse_transformation(EMPTY_TRANSFORMATION)
        assert t.templates == {} and t.pointcuts == {}
        assert t.aspects.advices == {}
        assert t.aspects.start == ""

    def test_blank_document(self):
        assert parse_transformation("").aspects.advices == {}

    def test_counter(self, counter_transformation):
        t = counter_transformation
        assert t.pointcuts == {"exported": "() => func(* * (..), exported)"}
        assert t.aspects.start == "(global.set %counter% (i32.const 5))"
        assert t.aspects.context.variables == {"counter": "i32 = 0"}

        log = t.aspects.context.functions["log"]
        assert log.args == [Argument("value", "i32")]
        assert log.imported == ImportSpec("env", "log")
        assert log.exported is None

        bump = t.aspects.context.functions["bump"]
        assert bump.result == "i32"
        assert bump.variables == {"tmp": "i32"}
        assert bump.exported == "bump"
        assert t.aspects.context.count_imported_functions() == 1

        advice = t.aspects.advices["count"]
        assert advice.pointcut == "() => exported()"
        assert advice.order is None
        assert not advice.all and not advice.smart

    def test_advice_order_is_kept(self):
        t = parse_transformation("""
aspects:
  advices:
    zeta: {pointcut: "() => a()", advice: "%this%"}
    alpha: {pointcut: "() => b()", advice: "%this%", order: 2, all: true, smart: true}
""")
        assert list(t.aspects.advices) == ["zeta", "alpha"]
        alpha = t.aspects.advices["alpha"]
        assert (alpha.order, alpha.all, alpha.smart) == (2, True, True)

    def test_numbers_become_text(self):
        t = from_dict({"aspects": {"context": {"variables": {"n": 5}}}})
        assert t.aspects.context.variables == {"n": "5"}

    def test_unknown_keys_are_ignored(self):
        t = from_dict({"extra": 1, "aspects": {"advices": {"a": {"advice": "%this%", "note": "x"}}}})
        assert t.aspects.advices["a"].advice == "%this%"


class TestErrors:

    @pytest.mark.parametrize("data,message", [
        ([], "expected a mapping"),
        ({"aspects": []}, "aspects: expected a mapping"),
        ({"aspects": {"advices": {"a": {"order": "1"}}}}, "order: expected an integer"),
        ({"aspects": {"advices": {"a": {"order": True}}}}, "order: expected an integer"),
        ({"aspects": {"advices": {"a": {"all": "yes"}}}}, "all: expected a boolean"),
        ({"aspects": {"advices": {"a": {"advice": ["x"]}}}}, "advice: expected a string"),
        ({"aspects": {"context": {"functions": {"f": {"args": "i32"}}}}}, "args: expected a list"),
        ({"templates": {"t": True}}, "templates.t: expected a string"),
    ])
    def test_invalid(self, data, message):
        with pytest.raises(TransformationError, match=message):
            from_dict(data)

    def test_invalid_yaml(self):
        with pytest.raises(TransformationError, match="invalid transformation YAML"):
            parse_transformation("aspects: [unclosed")

    def test_missing_file(self, tmp_path):
        with pytest.raises(TransformationError, match="reading transformation"):
            load_transformation(tmp_path / "missing.yml")

    def test_load_file(self, tmp_path):
        path = tmp_path / "t.yml"
        path.write_text(COUNTER_TRANSFORMATION, encoding="utf-8")
        assert list(load_transformation(path).aspects.advices) == ["count"]
