"""Tests for the tree-sitter ES-module linker."""

from __future__ import annotations

import pytest

from helpers import ENTRY_JS, ONRENDER_JS
from optiplay.bundler.linker import EsmLinker
from optiplay.bundler.pipeline import BundleError, InputOptions, OutputOptions, UnresolvedModuleError
from optiplay.bundler.resolver import VirtualModuleResolver
from optiplay.pipeline.compiler import ModuleArtifact


def _bundle(linker: EsmLinker, modules: dict[str, str], warnings: list | None = None, fmt: str = "es"):
    resolver = VirtualModuleResolver([ModuleArtifact(p, c) for p, c in modules.items()])
    options = InputOptions(
        input="input.js",
        resolve_id=resolver.resolve_id,
        load=resolver.load,
        on_warn=warnings.append if warnings is not None else None,
    )
    return linker.build(options).generate(OutputOptions(format=fmt)).output


class TestDynamicChunks:
    def test_entry_and_dynamic_chunk(self, linker):
        chunks = _bundle(linker, {
            "input.js": ENTRY_JS,
            "h_input_greeter_onrender.js": ONRENDER_JS,
        })
        assert [c.file_name for c in chunks] == ["input.js", "h_input_greeter_onrender.js"]

        entry, hook = chunks
        assert entry.is_entry and not entry.is_dynamic_entry
        assert not hook.is_entry and hook.is_dynamic_entry

        assert entry.code.startswith('import { qComponent, qHook } from "@builder.io/qwik";\n\n')
        assert 'import("./h_input_greeter_onrender.js")' in entry.code
        assert "export const Greeter = qComponent(" in entry.code

        assert hook.code.startswith('import { h } from "@builder.io/qwik";\n\n')
        assert "export const Greeter_onRender" in hook.code

    def test_output_is_deterministic(self, linker):
        modules = {"input.js": ENTRY_JS, "h_input_greeter_onrender.js": ONRENDER_JS}
        assert _bundle(linker, modules) == _bundle(linker, modules)


class TestStaticInlining:
    MODULES = {
        "input.js": (
            'import { add as plus, VERSION } from "./math";\n'
            'import greet from "./greet";\n'
            'import * as util from "./util";\n'
            "export const result = plus(1, 2) + greet(VERSION) + util.twice(1);\n"
        ),
        "math.js": (
            "export function add(a, b) { return a + b; }\n"
            'export const VERSION = "1";\n'
        ),
        "greet.js": (
            'import { VERSION } from "./math";\n'
            'export default function greet(v) { return "v" + v; }\n'
        ),
        "util.js": (
            "export const twice = (n) => n * 2;\n"
            "export default 7;\n"
        ),
    }

    def test_single_chunk_without_relative_imports(self, linker):
        chunks = _bundle(linker, self.MODULES)
        assert len(chunks) == 1
        code = chunks[0].code
        assert 'from "./' not in code
        assert "import " not in code

    def test_dependency_order(self, linker):
        code = _bundle(linker, self.MODULES)[0].code
        positions = [
            code.index("function add(a, b)"),
            code.index("function greet(v)"),
            code.index("const twice"),
            code.index("export const result"),
        ]
        assert positions == sorted(positions)

    def test_exports_stripped_from_inlined_modules(self, linker):
        code = _bundle(linker, self.MODULES)[0].code
        assert "export function add" not in code
        assert "export default" not in code
        assert "const __default_1 = 7;" in code

    def test_bindings_rebound(self, linker):
        code = _bundle(linker, self.MODULES)[0].code
        assert "const plus = add;" in code
        assert "const VERSION = VERSION" not in code
        assert (
            'const util = Object.freeze({ __proto__: null, "default": __default_1, "twice": twice });'
            in code
        )

    def test_missing_export_warns(self, linker):
        warnings = []
        chunks = _bundle(linker, {
            "input.js": 'import { nope } from "./a";\nexport default nope;\n',
            "a.js": "export const yes = 1;\n",
        }, warnings)
        assert "const nope = undefined;" in chunks[0].code
        assert any('"nope" is not exported' in w for w in warnings)


class TestReExports:
    def test_root_reexports_become_export_clauses(self, linker):
        code = _bundle(linker, {
            "input.js": 'export * from "./a";\nexport { b as bee } from "./b";\n',
            "a.js": "export const x = 1;\nexport const y = 2;\n",
            "b.js": "export const b = 3;\n",
        })[0].code
        assert "export { x, y };" in code
        assert "export { b as bee };" in code
        assert "const x = 1;" in code
        assert "export const x" not in code

    def test_reexport_through_intermediate(self, linker):
        code = _bundle(linker, {
            "input.js": 'import { deep } from "./mid";\nexport const out = deep;\n',
            "mid.js": 'export { inner as deep } from "./leaf";\n',
            "leaf.js": "export const inner = 42;\n",
        })[0].code
        assert "const deep = inner;" in code
        assert "const inner = 42;" in code


class TestExternals:
    def test_merged_and_hoisted(self, linker):
        code = _bundle(linker, {
            "input.js": 'import { a } from "lib";\nimport { z } from "./a";\nexport default a + z;\n',
            "a.js": 'import { a, b as c } from "lib";\nimport "side";\nexport const z = a + c;\n',
        })[0].code
        assert code.startswith('import { a, b as c } from "lib";\nimport "side";\n\n')
        assert code.count("from \"lib\"") == 1


class TestFailures:
    def test_unresolved_module(self, linker):
        with pytest.raises(UnresolvedModuleError) as exc:
            _bundle(linker, {"input.js": 'import { x } from "./missing";\n'})
        assert exc.value.module_id == "./missing.js"
        assert exc.value.importer == "input.js"

    def test_missing_entry(self, linker):
        with pytest.raises(UnresolvedModuleError):
            _bundle(linker, {"other.js": "export const a = 1;\n"})

    def test_syntax_error(self, linker):
        with pytest.raises(BundleError, match="Syntax error in input.js"):
            _bundle(linker, {"input.js": "export const = ;\n"})

    def test_unsupported_format(self, linker):
        with pytest.raises(BundleError, match="Unsupported output format"):
            _bundle(linker, {"input.js": "export const a = 1;\n"}, fmt="cjs")

    def test_circular_dependency_warns(self, linker):
        warnings = []
        chunks = _bundle(linker, {
            "input.js": 'import { a } from "./a";\nexport const out = a;\n',
            "a.js": 'import { b } from "./b";\nexport const a = 1;\n',
            "b.js": 'import { a } from "./a";\nexport const b = 2;\n',
        }, warnings)
        assert len(chunks) == 1
        assert any("Circular dependency" in w for w in warnings)
