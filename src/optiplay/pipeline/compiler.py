"""Compiler invocation and normalization of its results."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import shutil
import time
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from optiplay import config
from optiplay.state.codec import EntryStrategy, MinifyMode, SessionState

logger = logging.getLogger(__name__)


class CompileError(Exception):
    """Raised when the compiler call fails or returns an unusable payload."""


@dataclass(frozen=True)
class InputFile:
    path: str
    code: str


@dataclass(frozen=True)
class CompileOptions:
    root_dir: str
    transpile: bool
    minify: MinifyMode
    entry_strategy: EntryStrategy
    input: tuple[InputFile, ...]
    source_maps: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Wire form handed to the compiler (camelCase keys)."""
        return {
            "rootDir": self.root_dir,
            "transpile": self.transpile,
            "minify": self.minify.value,
            "entryStrategy": self.entry_strategy.value,
            "sourceMaps": self.source_maps,
            "input": [{"path": f.path, "code": f.code} for f in self.input],
        }


@dataclass(frozen=True)
class ModuleArtifact:
    path: str
    code: str


@dataclass(frozen=True)
class Highlight:
    start_line: int
    start_col: int
    end_line: int
    end_col: int


@dataclass(frozen=True)
class Diagnostic:
    message: str
    highlights: tuple[Highlight, ...] = ()


@dataclass(frozen=True)
class CompileResult:
    modules: tuple[ModuleArtifact, ...]
    diagnostics: tuple[Diagnostic, ...]


# ── Wire schema ──
# Compilers report ranges in camelCase; snake_case is accepted too.


class _HighlightModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start_line: int = Field(validation_alias=AliasChoices("startLine", "start_line"))
    start_col: int = Field(validation_alias=AliasChoices("startCol", "start_col"))
    end_line: int = Field(validation_alias=AliasChoices("endLine", "end_line"))
    end_col: int = Field(validation_alias=AliasChoices("endCol", "end_col"))


class _DiagnosticModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message: str
    highlights: list[_HighlightModel] = Field(
        default_factory=list,
        validation_alias=AliasChoices("highlights", "code_highlights", "codeHighlights"),
    )

    @field_validator("highlights", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class _ModuleModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    path: str
    code: str


class _CompileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    modules: list[_ModuleModel] = Field(default_factory=list)
    diagnostics: list[_DiagnosticModel] = Field(default_factory=list)

    @field_validator("modules", "diagnostics", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class Compiler(Protocol):
    """External compiler: ``compile(options) -> {modules, diagnostics}``.

    May be a coroutine function or a plain function.
    """

    def compile(self, options: CompileOptions) -> Any:
        ...


def normalize_result(raw: Any) -> CompileResult:
    """Validate a raw compiler response into a CompileResult."""
    try:
        resp = _CompileResponse.model_validate(raw)
    except ValidationError as e:
        raise CompileError(f"Malformed compiler response ({e.error_count()} error(s))") from e
    return CompileResult(
        modules=tuple(ModuleArtifact(path=m.path, code=m.code) for m in resp.modules),
        diagnostics=tuple(
            Diagnostic(
                message=d.message,
                highlights=tuple(
                    Highlight(h.start_line, h.start_col, h.end_line, h.end_col)
                    for h in d.highlights
                ),
            )
            for d in resp.diagnostics
        ),
    )


class CompileInvoker:
    """Builds CompileOptions from a session and runs one compile."""

    def __init__(self, compiler: Compiler, root_dir: str | None = None) -> None:
        self._compiler = compiler
        self._root_dir = root_dir or config.COMPILER_ROOT_DIR

    def build_options(self, state: SessionState, source_text: str | None = None) -> CompileOptions:
        """Derive the option set for ``state``.

        ``source_text`` overrides the state's text (the debounced value).
        """
        code = state.source_text if source_text is None else source_text
        return CompileOptions(
            root_dir=self._root_dir,
            transpile=state.transpile,
            minify=state.minify_mode,
            entry_strategy=state.entry_strategy,
            input=(InputFile(path=config.INPUT_PATH, code=code),),
        )

    async def invoke(self, options: CompileOptions) -> CompileResult:
        """Run the compiler. Raises CompileError on any failure."""
        logger.debug(
            "Compile: transpile=%s minify=%s entryStrategy=%s (%d chars)",
            options.transpile, options.minify.value, options.entry_strategy.value,
            sum(len(f.code) for f in options.input),
        )
        t0 = time.perf_counter()
        try:
            raw = self._compiler.compile(options)
            if inspect.isawaitable(raw):
                raw = await raw
        except CompileError:
            raise
        except Exception as e:
            raise CompileError(f"Compiler call failed: {e}") from e

        result = normalize_result(raw)
        logger.info(
            "Compiled %d module(s), %d diagnostic(s) in %.0fms",
            len(result.modules), len(result.diagnostics), (time.perf_counter() - t0) * 1000,
        )
        return result


class SubprocessCompiler:
    """Runs an external compiler process speaking JSON over stdin/stdout.

    The process receives the wire form of CompileOptions on stdin and must
    print a ``{"modules": [...], "diagnostics": [...]}`` object on stdout.
    """

    def __init__(self, command: list[str] | None = None) -> None:
        self._command = list(config.COMPILER_COMMAND if command is None else command)

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def available(self) -> bool:
        return bool(self._command) and shutil.which(self._command[0]) is not None

    async def compile(self, options: CompileOptions) -> Any:
        if not self._command:
            raise CompileError("No compiler command configured")
        payload = json.dumps(options.to_dict()).encode("utf-8")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise CompileError(f"{self._command[0]} is not installed or not in PATH")

        try:
            stdout, stderr = await proc.communicate(payload)
        except asyncio.CancelledError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise
        if proc.returncode != 0:
            raise CompileError(
                f"{' '.join(self._command)} exited with {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        try:
            return json.loads(stdout)
        except ValueError as e:
            raise CompileError("Compiler output is not valid JSON") from e
