"""Bundling pass over the compiled module set.

The bundler engine follows a two-phase contract: ``build(input_options)``
returns a handle whose ``generate(output_options)`` yields the output
chunks. Either call may be synchronous or return an awaitable.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from optiplay import config
from optiplay.bundler.resolver import VirtualModuleResolver
from optiplay.pipeline.compiler import ModuleArtifact

logger = logging.getLogger(__name__)


class BundleError(Exception):
    """Raised by a bundler engine when a build cannot complete."""


class UnresolvedModuleError(BundleError):
    def __init__(self, module_id: str, importer: str | None = None) -> None:
        self.module_id = module_id
        self.importer = importer
        where = f" (imported by {importer})" if importer else ""
        super().__init__(f"Could not load {module_id}{where}")


@dataclass(frozen=True)
class InputOptions:
    input: str
    resolve_id: Callable[[str, str | None], str | None]
    load: Callable[[str], str | None]
    on_warn: Callable[[str], None] | None = None


@dataclass(frozen=True)
class OutputOptions:
    format: str = "es"


@dataclass(frozen=True)
class OutputChunk:
    """One chunk as produced by a bundler engine."""

    file_name: str
    code: str
    is_entry: bool
    is_dynamic_entry: bool = False


@dataclass(frozen=True)
class BundleOutput:
    output: tuple[OutputChunk, ...]


class BundleHandle(Protocol):
    def generate(self, options: OutputOptions) -> Any:
        ...


class Bundler(Protocol):
    def build(self, options: InputOptions) -> Any:
        ...


@dataclass(frozen=True)
class BundleChunk:
    path: str
    code: str
    is_entry_point: bool


class _OutputChunkModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file_name: str = Field(validation_alias=AliasChoices("fileName", "file_name"))
    code: str | None = None
    is_entry: bool = Field(default=False, validation_alias=AliasChoices("isEntry", "is_entry"))


class _BundleOutputModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    output: list[_OutputChunkModel]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _log_warning(message: str) -> None:
    logger.warning("Bundler: %s", message)


class BundlePipeline:
    """Drives a bundler over a VirtualModuleResolver for one module set."""

    def __init__(self, bundler: Bundler, entry_id: str = config.ENTRY_ID) -> None:
        self._bundler = bundler
        self._entry_id = entry_id

    async def run(self, modules: Sequence[ModuleArtifact]) -> tuple[BundleChunk, ...] | None:
        """Bundle ``modules`` starting from the entry id.

        Returns None when bundling fails; the error is logged, not raised.
        """
        resolver = VirtualModuleResolver(modules)
        input_options = InputOptions(
            input=self._entry_id,
            resolve_id=resolver.resolve_id,
            load=resolver.load,
            on_warn=_log_warning,
        )
        t0 = time.perf_counter()
        try:
            handle = await _resolve(self._bundler.build(input_options))
            generated = await _resolve(handle.generate(OutputOptions(format="es")))
            parsed = _BundleOutputModel.model_validate(generated)
        except ValidationError:
            logger.exception("Bundler returned a malformed output")
            return None
        except Exception:
            logger.exception("Bundling %s failed", self._entry_id)
            return None

        chunks = tuple(
            BundleChunk(path=c.file_name, code=c.code, is_entry_point=c.is_entry)
            for c in parsed.output
            if c.code is not None
        )
        logger.info(
            "Bundled %d module(s) into %d chunk(s) in %.0fms",
            len(modules), len(chunks), (time.perf_counter() - t0) * 1000,
        )
        return chunks
