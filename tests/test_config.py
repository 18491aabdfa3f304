# tests/test_config.py
"""
Tests for option resolution: defaults, options file, environment and
overrides.
"""

import os

import pytest

from waspect import config
from waspect.config import WeaveOptions
from waspect.errors import TransformationError


class TestResolution:

    def test_defaults(self):
        options = config.load_options(environ={})
        assert options == WeaveOptions()
        assert options.in_module == "input.wasm"
        assert options.out_module == "output.wasm"

    def test_layers(self, tmp_path):
        path = tmp_path / "weave.yml"
        path.write_text("in_module: a.wat\nout_module: b.wat\ninclude: [x, y]\n", encoding="utf-8")
        options = config.load_options(
            path,
            overrides={"out_module": "c.wat", "exclude": None},
            environ={"WASPECT_OUT_MODULE": "env.wat", "WASPECT_ALLOW_EMPTY": "yes"},
        )
        assert options.in_module == "a.wat"
        assert options.out_module == "c.wat"
        assert options.include == ["x", "y"]
        assert options.exclude == []
        assert options.allow_empty is True

    def test_environment_lists(self):
        options = config.from_environment(environ={"WASPECT_EXCLUDE": "a, b,,c"})
        assert options.exclude == ["a", "b", "c"]

    @pytest.mark.parametrize("raw,value", [("1", True), ("On", True), ("no", False), ("", False)])
    def test_booleans(self, raw, value):
        assert config.from_mapping({"print_js": raw}).print_js is value

    def test_invalid_boolean(self):
        with pytest.raises(TransformationError, match="expected a boolean"):
            config.from_mapping({"verbose": "maybe"})

    def test_invalid_list(self):
        with pytest.raises(TransformationError, match="expected a list"):
            config.from_mapping({"include": 3})

    def test_unknown_keys_are_ignored(self):
        assert config.from_mapping({"colour": "red"}) == WeaveOptions()

    def test_options_file_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "weave.yml"
        path.write_text("- a\n", encoding="utf-8")
        with pytest.raises(TransformationError, match="expected a mapping"):
            config.load_file(path)

    def test_missing_options_file(self, tmp_path):
        with pytest.raises(TransformationError, match="reading options file"):
            config.load_file(tmp_path / "nope.yml")


class TestOptions:

    def test_resolved_defaults_glue_path(self):
        options = WeaveOptions(out_module="out/app.wasm").resolved()
        assert options.out_js == os.path.join("out", "app.js")

    def test_resolved_applies_data_dir(self, tmp_path):
        options = WeaveOptions(data_dir=str(tmp_path), in_module="a.wat",
                               out_module=str(tmp_path / "abs.wat")).resolved()
        assert options.in_module == str(tmp_path / "a.wat")
        assert options.out_module == str(tmp_path / "abs.wat")
        assert options.out_js == str(tmp_path / "abs.js")
        assert options.in_transform == str(tmp_path / "input.yml")

    def test_validate(self):
        options = WeaveOptions(include=["a"], exclude=["a"], in_module="x.wasm", out_module="x.wasm")
        warnings = options.validate()
        assert "advices both included and excluded: a" in warnings
        assert "output module overwrites the input module" in warnings

    def test_validation_warnings_are_logged(self, caplog):
        config.load_options(overrides={"include": ["a"], "exclude": ["a"]}, environ={})
        assert "both included and excluded" in caplog.text
