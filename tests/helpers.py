"""Shared test helpers — fake compiler collaborators and canned compiler output."""

from __future__ import annotations

import asyncio

from optiplay.pipeline.compiler import CompileOptions

ENTRY_JS = """\
import { qComponent, qHook } from "@builder.io/qwik";
export const Greeter = qComponent({
  onRender: qHook(() => import("./h_input_greeter_onrender"), "Greeter_onRender")
});
"""

ONRENDER_JS = """\
import { h } from "@builder.io/qwik";
export const Greeter_onRender = (props) => h("div", null, h("span", null, "Hello ", props.name, "!"));
"""


def fake_compile(options: dict) -> dict:
    """Deterministic stand-in for the optimizer.

    Unbalanced braces produce a diagnostic on the last line instead of
    modules. ``transpile`` selects between a single .tsx module and a
    two-module JS split.
    """
    code = options["input"][0]["code"]
    if code.count("{") != code.count("}"):
        last_line = len(code.rstrip("\n").split("\n"))
        return {
            "modules": [],
            "diagnostics": [{
                "message": "Expected '}', got '<eof>'",
                "code_highlights": [
                    {"startLine": last_line, "startCol": 1, "endLine": last_line, "endCol": 2},
                ],
            }],
        }
    if not options["transpile"]:
        return {
            "modules": [{"path": "input.tsx", "code": f"// minify={options['minify']}\n{code}"}],
            "diagnostics": [],
        }
    return {
        "modules": [
            {"path": "input.js", "code": ENTRY_JS},
            {"path": "h_input_greeter_onrender.js", "code": ONRENDER_JS},
        ],
        "diagnostics": [],
    }


class FakeCompiler:
    """Async compiler recording every option set it receives."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[CompileOptions] = []

    async def compile(self, options: CompileOptions) -> dict:
        self.calls.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        return fake_compile(options.to_dict())


class GatedCompiler:
    """Compiler whose calls block until released one by one."""

    def __init__(self) -> None:
        self.calls: list[CompileOptions] = []
        self._gates: list[asyncio.Event] = []

    async def compile(self, options: CompileOptions) -> dict:
        gate = asyncio.Event()
        self.calls.append(options)
        self._gates.append(gate)
        await gate.wait()
        return fake_compile(options.to_dict())

    def release(self, index: int) -> None:
        self._gates[index].set()


class FailingCompiler:
    def __init__(self) -> None:
        self.calls = 0

    async def compile(self, options: CompileOptions) -> dict:
        self.calls += 1
        raise RuntimeError("optimizer crashed")


async def settle(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
