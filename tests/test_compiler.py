"""Tests for compile option construction, invocation and result normalization."""

from __future__ import annotations

import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from helpers import ENTRY_JS, FakeCompiler, FailingCompiler
from optiplay.pipeline.compiler import (
    CompileError,
    CompileInvoker,
    Diagnostic,
    Highlight,
    InputFile,
    ModuleArtifact,
    SubprocessCompiler,
    normalize_result,
)
from optiplay.state.codec import EntryStrategy, MinifyMode, SessionState

ECHO_COMPILER = """\
import json, sys
opts = json.load(sys.stdin)
print(json.dumps({"modules": [{"path": "input.js", "code": opts["input"][0]["code"]}],
                  "diagnostics": [], "echo": opts}))
"""


@pytest.fixture
def state():
    return SessionState("let a = 1;", MinifyMode.SIMPLIFY, EntryStrategy.HOOK, transpile=True)


class TestBuildOptions:
    def test_derived_from_state(self, state):
        invoker = CompileInvoker(FakeCompiler(), root_dir="/project")
        options = invoker.build_options(state)
        assert options.root_dir == "/project"
        assert options.transpile is True
        assert options.minify == MinifyMode.SIMPLIFY
        assert options.entry_strategy == EntryStrategy.HOOK
        assert options.source_maps is False
        assert options.input == (InputFile(path="input.tsx", code="let a = 1;"),)

    def test_source_override(self, state):
        options = CompileInvoker(FakeCompiler()).build_options(state, "let b = 2;")
        assert options.input[0].code == "let b = 2;"

    def test_wire_form(self, state):
        wire = CompileInvoker(FakeCompiler(), root_dir="/p").build_options(state).to_dict()
        assert wire == {
            "rootDir": "/p",
            "transpile": True,
            "minify": "simplify",
            "entryStrategy": "hook",
            "sourceMaps": False,
            "input": [{"path": "input.tsx", "code": "let a = 1;"}],
        }

    def test_equal_inputs_give_equal_options(self, state):
        invoker = CompileInvoker(FakeCompiler())
        assert invoker.build_options(state) == invoker.build_options(state)


class TestNormalizeResult:
    def test_camel_case_highlights(self):
        result = normalize_result({
            "modules": [{"path": "input.js", "code": "x", "isEntry": True}],
            "diagnostics": [{
                "message": "bad",
                "highlights": [{"startLine": 3, "startCol": 5, "endLine": 3, "endCol": 9}],
            }],
        })
        assert result.modules == (ModuleArtifact("input.js", "x"),)
        assert result.diagnostics == (Diagnostic("bad", (Highlight(3, 5, 3, 9),)),)

    def test_code_highlights_and_snake_case(self):
        result = normalize_result({
            "diagnostics": [{
                "message": "bad",
                "code_highlights": [{"start_line": 1, "start_col": 2, "end_line": 1, "end_col": 4}],
            }],
        })
        assert result.modules == ()
        assert result.diagnostics[0].highlights == (Highlight(1, 2, 1, 4),)

    def test_null_collections(self):
        result = normalize_result({"modules": None, "diagnostics": [{"message": "m", "code_highlights": None}]})
        assert result.modules == ()
        assert result.diagnostics == (Diagnostic("m", ()),)

    def test_module_order_preserved(self):
        result = normalize_result({"modules": [
            {"path": "z.js", "code": "1"}, {"path": "a.js", "code": "2"}, {"path": "m.js", "code": "3"},
        ]})
        assert [m.path for m in result.modules] == ["z.js", "a.js", "m.js"]

    def test_attribute_objects_accepted(self):
        module = MagicMock(path="input.js", code="x")
        raw = MagicMock(modules=[module], diagnostics=[])
        assert normalize_result(raw).modules == (ModuleArtifact("input.js", "x"),)

    @pytest.mark.parametrize("raw", [
        {"modules": [{"path": "a.js"}]},
        {"modules": "nope"},
        {"diagnostics": [{"highlights": []}]},
        42,
    ])
    def test_malformed_raises(self, raw):
        with pytest.raises(CompileError):
            normalize_result(raw)


class TestCompileInvoker:
    @pytest.mark.asyncio
    async def test_invoke_async_compiler(self, state):
        compiler = FakeCompiler()
        invoker = CompileInvoker(compiler)
        result = await invoker.invoke(invoker.build_options(state))
        assert [m.path for m in result.modules] == ["input.js", "h_input_greeter_onrender.js"]
        assert result.modules[0].code == ENTRY_JS
        assert len(compiler.calls) == 1

    @pytest.mark.asyncio
    async def test_invoke_sync_compiler(self, state):
        compiler = MagicMock()
        compiler.compile.return_value = {"modules": [{"path": "input.js", "code": "sync"}]}
        invoker = CompileInvoker(compiler)
        result = await invoker.invoke(invoker.build_options(state))
        assert result.modules == (ModuleArtifact("input.js", "sync"),)

    @pytest.mark.asyncio
    async def test_compiler_exception_wrapped(self, state):
        invoker = CompileInvoker(FailingCompiler())
        with pytest.raises(CompileError, match="optimizer crashed"):
            await invoker.invoke(invoker.build_options(state))


class TestSubprocessCompiler:
    def test_unavailable_without_command(self):
        assert SubprocessCompiler([]).available() is False

    def test_unavailable_when_missing(self):
        assert SubprocessCompiler(["definitely-not-a-real-optimizer-binary"]).available() is False

    def test_available(self):
        assert SubprocessCompiler([sys.executable, "-c", "pass"]).available() is True

    @pytest.mark.asyncio
    async def test_round_trip_through_process(self, state):
        compiler = SubprocessCompiler([sys.executable, "-c", ECHO_COMPILER])
        invoker = CompileInvoker(compiler, root_dir="/p")
        options = invoker.build_options(state)

        raw = await compiler.compile(options)
        assert raw["echo"] == options.to_dict()

        result = await invoker.invoke(options)
        assert result.modules == (ModuleArtifact("input.js", "let a = 1;"),)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, state):
        compiler = SubprocessCompiler([sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(3)"])
        options = CompileInvoker(compiler).build_options(state)
        with pytest.raises(CompileError, match="exited with 3: nope"):
            await compiler.compile(options)

    @pytest.mark.asyncio
    async def test_invalid_json(self, state):
        compiler = SubprocessCompiler([sys.executable, "-c", "print('not json')"])
        options = CompileInvoker(compiler).build_options(state)
        with pytest.raises(CompileError, match="not valid JSON"):
            await compiler.compile(options)

    @pytest.mark.asyncio
    async def test_missing_executable(self, state):
        compiler = SubprocessCompiler(["definitely-not-a-real-optimizer-binary"])
        options = CompileInvoker(compiler).build_options(state)
        with pytest.raises(CompileError, match="not installed"):
            await compiler.compile(options)

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, state):
        proc = MagicMock()

        async def communicate(payload):
            await asyncio.sleep(30)

        proc.communicate = communicate
        compiler = SubprocessCompiler(["optimizer"])
        options = CompileInvoker(compiler).build_options(state)

        with patch("optiplay.pipeline.compiler.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            task = asyncio.create_task(compiler.compile(options))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        proc.kill.assert_called_once_with()
