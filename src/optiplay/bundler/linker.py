"""In-process ES-module linker — the default bundler engine.

Walks the import graph through the resolve/load hooks, parses each module
with tree-sitter and emits one chunk for the entry plus one per dynamically
imported module. Statically imported modules are inlined into the chunk
that reaches them, in dependency order: their ``import`` statements are
removed, ``export`` keywords stripped and imported bindings re-bound with
``const``. Imports the resolver declines stay external and are hoisted,
merged per source, to the top of each chunk.

Identifiers are not renamed, so two inlined modules declaring the same
top-level name collide.
"""

from __future__ import annotations

import json
import logging
import posixpath
from collections import deque
from dataclasses import dataclass, field

import tree_sitter_typescript as ts_typescript
from tree_sitter import Language, Node, Parser

from optiplay.bundler.pipeline import (
    BundleError,
    BundleOutput,
    InputOptions,
    OutputChunk,
    OutputOptions,
    UnresolvedModuleError,
)

logger = logging.getLogger(__name__)

TS_LANGUAGE = Language(ts_typescript.language_typescript())

_ES_FORMATS = ("es", "esm", "module")

_NAMED_DECLARATIONS = (
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "abstract_class_declaration",
)
_VARIABLE_DECLARATIONS = ("lexical_declaration", "variable_declaration")


def _text(node: Node) -> str:
    return node.text.decode("utf-8")


def _string_value(node: Node) -> str:
    """Value of a string literal node (quotes removed)."""
    return _text(node)[1:-1]


def _export_name(node: Node) -> str:
    # identifier, or a string in `export { a as "b c" }`
    if node.type == "string":
        return _string_value(node)
    return _text(node)


def _declared_names(decl: Node) -> list[str]:
    if decl.type in _VARIABLE_DECLARATIONS:
        names = []
        for child in decl.named_children:
            if child.type != "variable_declarator":
                continue
            name = child.child_by_field_name("name")
            if name is not None and name.type == "identifier":
                names.append(_text(name))
        return names
    name = decl.child_by_field_name("name")
    return [_text(name)] if name is not None else []


def _has_token(node: Node, token: str) -> bool:
    return any(not c.is_named and c.type == token for c in node.children)


# ── Per-module analysis records ──


@dataclass
class _StaticImport:
    start: int
    end: int
    source: str
    target: str | None  # None = external
    default: str | None = None
    namespace: str | None = None
    named: list[tuple[str, str]] = field(default_factory=list)  # (imported, local)


@dataclass
class _ExportPrefix:
    """`export ` / `export default ` in front of a declaration or value."""

    start: int
    end: int
    default_local: str | None = None  # set for `export default <expr>`


@dataclass
class _ExportClause:
    start: int
    end: int


@dataclass
class _ReExport:
    start: int
    end: int
    source: str
    target: str | None
    specifiers: list[tuple[str, str]] | None = None  # (imported, exported); None = `*`
    namespace: tuple[str, str] | None = None  # (exported, local)


@dataclass
class _DynamicImport:
    start: int
    end: int
    target: str


@dataclass
class _Module:
    id: str
    source: bytes
    static_deps: list[str] = field(default_factory=list)
    dynamic_deps: list[str] = field(default_factory=list)
    imports: list[_StaticImport] = field(default_factory=list)
    export_prefixes: list[_ExportPrefix] = field(default_factory=list)
    export_clauses: list[_ExportClause] = field(default_factory=list)
    reexports: list[_ReExport] = field(default_factory=list)
    dynamic_imports: list[_DynamicImport] = field(default_factory=list)
    # exported name -> ("local", name) | ("module", module_id, imported name)
    exports: dict[str, tuple] = field(default_factory=dict)
    star_reexports: list[str] = field(default_factory=list)


class EsmLinker:
    """Bundler engine implementing ``build(input_options) -> handle``."""

    def __init__(self) -> None:
        self._parser = Parser(TS_LANGUAGE)

    def build(self, options: InputOptions) -> LinkedBundle:
        entry = options.resolve_id(options.input, None)
        if entry is None:
            raise UnresolvedModuleError(options.input)

        modules: dict[str, _Module] = {}
        counter = _Counter()
        pending: deque[tuple[str, str | None]] = deque([(entry, None)])
        while pending:
            module_id, importer = pending.popleft()
            if module_id in modules:
                continue
            code = options.load(module_id)
            if code is None:
                raise UnresolvedModuleError(module_id, importer)
            module = self._analyze(module_id, code, options, counter)
            modules[module_id] = module
            for dep in module.static_deps + module.dynamic_deps:
                if dep not in modules:
                    pending.append((dep, module_id))

        logger.debug("Linked %d module(s) from %s", len(modules), entry)
        return LinkedBundle(entry, modules, options.on_warn)

    def _analyze(self, module_id: str, code: str, options: InputOptions, counter: _Counter) -> _Module:
        source = code.encode("utf-8")
        tree = self._parser.parse(source)
        if tree.root_node.has_error:
            raise BundleError(f"Syntax error in {module_id}")

        module = _Module(id=module_id, source=source)

        def resolve(spec: str) -> str | None:
            return options.resolve_id(spec, module_id)

        for stmt in tree.root_node.named_children:
            if stmt.type == "import_statement":
                self._analyze_import(module, stmt, resolve)
            elif stmt.type == "export_statement":
                self._analyze_export(module, stmt, resolve, counter)

        self._find_dynamic_imports(module, tree.root_node, resolve)
        return module

    def _analyze_import(self, module: _Module, stmt: Node, resolve) -> None:
        source_node = stmt.child_by_field_name("source")
        if source_node is None:
            return  # `import x = require(...)`
        spec = _string_value(source_node)
        target = resolve(spec)
        record = _StaticImport(stmt.start_byte, stmt.end_byte, spec, target)

        clause = next((c for c in stmt.named_children if c.type == "import_clause"), None)
        if clause is not None:
            for part in clause.named_children:
                if part.type == "identifier":
                    record.default = _text(part)
                elif part.type == "namespace_import":
                    ident = next(c for c in part.named_children if c.type == "identifier")
                    record.namespace = _text(ident)
                elif part.type == "named_imports":
                    for spec_node in part.named_children:
                        if spec_node.type != "import_specifier":
                            continue
                        name = _export_name(spec_node.child_by_field_name("name"))
                        alias = spec_node.child_by_field_name("alias")
                        record.named.append((name, _text(alias) if alias is not None else name))

        module.imports.append(record)
        if target is not None and target not in module.static_deps:
            module.static_deps.append(target)

    def _analyze_export(self, module: _Module, stmt: Node, resolve, counter: _Counter) -> None:
        source_node = stmt.child_by_field_name("source")
        declaration = stmt.child_by_field_name("declaration")
        value = stmt.child_by_field_name("value")
        is_default = _has_token(stmt, "default")

        if source_node is not None:
            spec = _string_value(source_node)
            target = resolve(spec)
            record = _ReExport(stmt.start_byte, stmt.end_byte, spec, target)
            clause = next((c for c in stmt.named_children if c.type == "export_clause"), None)
            ns_export = next((c for c in stmt.named_children if c.type == "namespace_export"), None)
            if clause is not None:
                record.specifiers = []
                for spec_node in clause.named_children:
                    if spec_node.type != "export_specifier":
                        continue
                    name = _export_name(spec_node.child_by_field_name("name"))
                    alias = spec_node.child_by_field_name("alias")
                    record.specifiers.append((name, _export_name(alias) if alias is not None else name))
            elif ns_export is not None:
                exported = _export_name(ns_export.named_children[-1])
                record.namespace = (exported, f"__ns_{counter.next()}")
            module.reexports.append(record)
            if target is None:
                return
            if target not in module.static_deps:
                module.static_deps.append(target)
            if record.specifiers is not None:
                for imported, exported in record.specifiers:
                    module.exports[exported] = ("module", target, imported)
            elif record.namespace is not None:
                module.exports[record.namespace[0]] = ("local", record.namespace[1])
            else:
                module.star_reexports.append(target)
            return

        if declaration is not None:
            names = _declared_names(declaration)
            if is_default:
                if names:
                    module.exports["default"] = ("local", names[0])
            else:
                for name in names:
                    module.exports[name] = ("local", name)
            module.export_prefixes.append(_ExportPrefix(stmt.start_byte, declaration.start_byte))
            return

        if value is not None:
            local = f"__default_{counter.next()}"
            module.exports["default"] = ("local", local)
            module.export_prefixes.append(_ExportPrefix(stmt.start_byte, value.start_byte, default_local=local))
            return

        clause = next((c for c in stmt.named_children if c.type == "export_clause"), None)
        if clause is not None:
            for spec_node in clause.named_children:
                if spec_node.type != "export_specifier":
                    continue
                name = _export_name(spec_node.child_by_field_name("name"))
                alias = spec_node.child_by_field_name("alias")
                module.exports[_export_name(alias) if alias is not None else name] = ("local", name)
            module.export_clauses.append(_ExportClause(stmt.start_byte, stmt.end_byte))

    def _find_dynamic_imports(self, module: _Module, root: Node, resolve) -> None:
        stack = [root]
        found: list[Node] = []
        while stack:
            node = stack.pop()
            if node.type == "call_expression":
                fn = node.child_by_field_name("function")
                args = node.child_by_field_name("arguments")
                if fn is not None and fn.type == "import" and args is not None:
                    arg = next((c for c in args.named_children), None)
                    if arg is not None and arg.type == "string":
                        found.append(arg)
            stack.extend(reversed(node.children))

        for arg in sorted(found, key=lambda n: n.start_byte):
            target = resolve(_string_value(arg))
            if target is None:
                continue
            module.dynamic_imports.append(_DynamicImport(arg.start_byte, arg.end_byte, target))
            if target not in module.dynamic_deps:
                module.dynamic_deps.append(target)


class _Counter:
    def __init__(self) -> None:
        self._n = 0

    def next(self) -> int:
        self._n += 1
        return self._n


def _chunk_file_name(module_id: str, taken: set[str]) -> str:
    base = posixpath.basename(module_id) or "chunk"
    stem = base[:-3] if base.endswith(".js") else base
    name = f"{stem}.js"
    n = 2
    while name in taken:
        name = f"{stem}-{n}.js"
        n += 1
    taken.add(name)
    return name


class LinkedBundle:
    """Handle returned by ``EsmLinker.build``."""

    def __init__(self, entry: str, modules: dict[str, _Module], on_warn=None) -> None:
        self.entry = entry
        self.modules = modules
        self._on_warn = on_warn

    def _warn(self, message: str) -> None:
        if self._on_warn is not None:
            self._on_warn(message)
        else:
            logger.warning(message)

    def generate(self, options: OutputOptions) -> BundleOutput:
        if options.format not in _ES_FORMATS:
            raise BundleError(f"Unsupported output format {options.format!r}")

        roots = [self.entry]
        for module in self.modules.values():
            for dep in module.dynamic_deps:
                if dep not in roots:
                    roots.append(dep)

        taken: set[str] = set()
        file_names = {root: _chunk_file_name(root, taken) for root in roots}

        chunks = []
        for root in roots:
            code = self._render_chunk(root, file_names)
            chunks.append(OutputChunk(
                file_name=file_names[root],
                code=code,
                is_entry=root == self.entry,
                is_dynamic_entry=root != self.entry,
            ))
        return BundleOutput(output=tuple(chunks))

    # ── Chunk rendering ──

    def _static_order(self, root: str) -> list[str]:
        """Post-order of the static import graph below ``root``."""
        order: list[str] = []
        done: set[str] = set()
        active: set[str] = set()

        def visit(module_id: str) -> None:
            if module_id in done:
                return
            if module_id in active:
                self._warn(f"Circular dependency through {module_id}")
                return
            active.add(module_id)
            for dep in self.modules[module_id].static_deps:
                visit(dep)
            active.discard(module_id)
            done.add(module_id)
            order.append(module_id)

        visit(root)
        return order

    def _resolve_export(self, module_id: str, name: str, seen: frozenset = frozenset()) -> str | None:
        """Local identifier that ``name`` exported by ``module_id`` refers to."""
        if (module_id, name) in seen:
            return None
        seen = seen | {(module_id, name)}
        module = self.modules[module_id]
        binding = module.exports.get(name)
        if binding is not None:
            if binding[0] == "local":
                return binding[1]
            return self._resolve_export(binding[1], binding[2], seen)
        if name != "default":
            for star in module.star_reexports:
                local = self._resolve_export(star, name, seen)
                if local is not None:
                    return local
        return None

    def _export_names(self, module_id: str, seen: frozenset = frozenset()) -> list[str]:
        if module_id in seen:
            return []
        module = self.modules[module_id]
        names = list(module.exports)
        for star in module.star_reexports:
            for name in self._export_names(star, seen | {module_id}):
                if name != "default" and name not in names:
                    names.append(name)
        return names

    def _local_for(self, module_id: str, name: str, importer: str) -> str:
        local = self._resolve_export(module_id, name)
        if local is None:
            self._warn(f'"{name}" is not exported by {module_id}, imported by {importer}')
            return "undefined"
        return local

    def _namespace_object(self, module_id: str, importer: str) -> str:
        entries = [
            f"{json.dumps(name)}: {self._local_for(module_id, name, importer)}"
            for name in sorted(self._export_names(module_id))
        ]
        return "Object.freeze({ __proto__: null" + "".join(f", {e}" for e in entries) + " })"

    def _render_chunk(self, root: str, file_names: dict[str, str]) -> str:
        externals = _ExternalImports()
        bodies = []
        for module_id in self._static_order(root):
            body = self._render_module(module_id, module_id == root, file_names, externals)
            if body.strip():
                bodies.append(body.strip("\n"))
        header = externals.render()
        parts = ([header] if header else []) + bodies
        return "\n\n".join(parts) + "\n"

    def _render_module(
        self, module_id: str, is_root: bool, file_names: dict[str, str], externals: _ExternalImports,
    ) -> str:
        module = self.modules[module_id]
        edits: list[tuple[int, int, str]] = []

        for imp in module.imports:
            if imp.target is None:
                externals.add(imp)
                edits.append((imp.start, imp.end, ""))
                continue
            lines = []
            if imp.default is not None:
                local = self._local_for(imp.target, "default", module_id)
                if local != imp.default:
                    lines.append(f"const {imp.default} = {local};")
            if imp.namespace is not None:
                lines.append(f"const {imp.namespace} = {self._namespace_object(imp.target, module_id)};")
            for imported, local_name in imp.named:
                local = self._local_for(imp.target, imported, module_id)
                if local != local_name:
                    lines.append(f"const {local_name} = {local};")
            edits.append((imp.start, imp.end, "\n".join(lines)))

        for prefix in module.export_prefixes:
            if prefix.default_local is not None:
                if not is_root:
                    edits.append((prefix.start, prefix.end, f"const {prefix.default_local} = "))
            elif not is_root:
                edits.append((prefix.start, prefix.end, ""))

        if not is_root:
            for clause in module.export_clauses:
                edits.append((clause.start, clause.end, ""))

        for rex in module.reexports:
            edits.append((rex.start, rex.end, self._render_reexport(module_id, rex, is_root)))

        for dyn in module.dynamic_imports:
            edits.append((dyn.start, dyn.end, json.dumps(f"./{file_names[dyn.target]}")))

        source = module.source
        for start, end, replacement in sorted(edits, key=lambda e: e[0], reverse=True):
            source = source[:start] + replacement.encode("utf-8") + source[end:]
        return source.decode("utf-8")

    def _render_reexport(self, module_id: str, rex: _ReExport, is_root: bool) -> str:
        if rex.target is None:
            if is_root:
                return _text_slice(self.modules[module_id].source, rex.start, rex.end)
            self._warn(f"Dropping external re-export from {rex.source!r} in {module_id}")
            return ""

        if rex.namespace is not None:
            exported, local = rex.namespace
            line = f"const {local} = {self._namespace_object(rex.target, module_id)};"
            if is_root:
                line += f"\nexport {{ {local} as {exported} }};"
            return line

        if not is_root:
            return ""
        if rex.specifiers is None:
            names = [n for n in self._export_names(rex.target) if n != "default"]
            pairs = [(n, n) for n in names]
        else:
            pairs = rex.specifiers
        specs = []
        for imported, exported in pairs:
            local = self._local_for(rex.target, imported, module_id)
            specs.append(exported if local == exported else f"{local} as {exported}")
        return f"export {{ {', '.join(specs)} }};" if specs else ""


def _text_slice(source: bytes, start: int, end: int) -> str:
    return source[start:end].decode("utf-8")


class _ExternalImports:
    """External imports of one chunk, merged per source specifier."""

    def __init__(self) -> None:
        self._sources: dict[str, dict] = {}

    def add(self, imp: _StaticImport) -> None:
        entry = self._sources.setdefault(imp.source, {"default": None, "namespaces": [], "named": []})
        if imp.default is not None and entry["default"] is None:
            entry["default"] = imp.default
        if imp.namespace is not None and imp.namespace not in entry["namespaces"]:
            entry["namespaces"].append(imp.namespace)
        for pair in imp.named:
            if pair not in entry["named"]:
                entry["named"].append(pair)

    def render(self) -> str:
        lines = []
        for source, entry in self._sources.items():
            src = json.dumps(source)
            clause = []
            if entry["default"] is not None:
                clause.append(entry["default"])
            if entry["named"]:
                specs = [n if n == local else f"{n} as {local}" for n, local in entry["named"]]
                clause.append("{ " + ", ".join(specs) + " }")
            if clause:
                lines.append(f"import {', '.join(clause)} from {src};")
            for ns in entry["namespaces"]:
                lines.append(f"import * as {ns} from {src};")
            if not clause and not entry["namespaces"]:
                lines.append(f"import {src};")
        return "\n".join(lines)
