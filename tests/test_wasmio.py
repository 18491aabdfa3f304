# tests/test_wasmio.py
"""
Tests for module file I/O and the WABT tool lookup.

The external tools are replaced by small shell scripts written into a
temporary dependencies directory.
"""

import logging
import os
import shutil
import stat
import sys

import pytest

from waspect import wasmio
from waspect.errors import ModuleIOError
from tests.conftest import IDENTITY_WAT

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh scripts")


def _script(path, body: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# Copies the input to the path following -o.
_COPY = """
src="$1"
while [ "$#" -gt 0 ]; do
  if [ "$1" = "-o" ]; then shift; cp "$src" "$1"; exit 0; fi
  shift
done
exit 3
"""


class TestFindTool:

    @posix_only
    @pytest.mark.parametrize("subdir", ["", "bin", "wabt"])
    def test_dependencies_dir_layouts(self, tmp_path, subdir):
        tool = _script(tmp_path / subdir / "wasm2wat", "exit 0")
        assert wasmio.find_tool("wasm2wat", tmp_path) == str(tool)

    @posix_only
    def test_non_executable_is_skipped(self, tmp_path, monkeypatch):
        (tmp_path / "wasm2wat").write_text("not a program")
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        with pytest.raises(ModuleIOError, match="wasm2wat not found"):
            wasmio.find_tool("wasm2wat", tmp_path)

    @posix_only
    def test_falls_back_to_path(self, tmp_path, monkeypatch):
        tool = _script(tmp_path / "path" / "wat2wasm", "exit 0")
        monkeypatch.setenv("PATH", str(tmp_path / "path"))
        assert wasmio.find_tool("wat2wasm", tmp_path / "deps") == str(tool)

    def test_missing_tool(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path))
        with pytest.raises(ModuleIOError, match="not found"):
            wasmio.find_tool("wat2wasm")


@posix_only
class TestTools:

    def test_wasm_to_wat(self, tmp_path):
        deps = tmp_path / "deps"
        _script(deps / "wasm2wat", _COPY)
        binary = tmp_path / "m.wasm"
        binary.write_text(IDENTITY_WAT)
        assert wasmio.read_module(binary, deps) == IDENTITY_WAT

    def test_wat_to_wasm(self, tmp_path):
        deps = tmp_path / "deps"
        _script(deps / "wat2wasm", _COPY)
        out = tmp_path / "out" / "m.wasm"
        wasmio.write_module(out, IDENTITY_WAT, deps)
        assert out.read_text() == IDENTITY_WAT

    def test_failing_tool(self, tmp_path):
        deps = tmp_path / "deps"
        _script(deps / "wat2wasm", "echo 'bad module' >&2; exit 1")
        with pytest.raises(ModuleIOError, match="exit code 1: bad module"):
            wasmio.wat_to_wasm(IDENTITY_WAT, tmp_path / "m.wasm", deps)

    @pytest.mark.skipif(shutil.which("wat2wasm") is None or shutil.which("wasm2wat") is None,
                        reason="WABT not installed")
    def test_real_wabt_round_trip(self, tmp_path):
        out = tmp_path / "m.wasm"
        wasmio.write_module(out, IDENTITY_WAT)
        text = wasmio.read_module(out)
        assert "local.get 0" in text
        assert '(export "id"' in text


class TestTextModules:

    def test_read_wat(self, tmp_path):
        path = tmp_path / "m.wat"
        path.write_text(IDENTITY_WAT)
        assert wasmio.read_module(path) == IDENTITY_WAT

    def test_write_wat_creates_directories(self, tmp_path):
        path = tmp_path / "a" / "b" / "m.wat"
        wasmio.write_module(path, IDENTITY_WAT)
        assert path.read_text() == IDENTITY_WAT

    def test_missing_module(self, tmp_path):
        with pytest.raises(ModuleIOError, match="does not exist"):
            wasmio.read_module(tmp_path / "nope.wat")

    def test_unknown_extension_is_read_as_text(self, tmp_path, caplog):
        path = tmp_path / "m.txt"
        path.write_text(IDENTITY_WAT)
        with caplog.at_level(logging.WARNING, logger="waspect"):
            assert wasmio.read_module(path) == IDENTITY_WAT
        assert "unknown module extension" in caplog.text

    def test_write_text_error(self, tmp_path):
        target = tmp_path / "dir"
        os.mkdir(target)
        with pytest.raises(ModuleIOError, match="writing"):
            wasmio.write_text(target, "x")
