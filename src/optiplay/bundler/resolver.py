"""Module resolution against the compiler's in-memory output (no filesystem)."""

from __future__ import annotations

import logging
import posixpath
from typing import Sequence

from optiplay.pipeline.compiler import ModuleArtifact

logger = logging.getLogger(__name__)


def _normalize(path: str) -> str:
    return posixpath.normpath(path)


class VirtualModuleResolver:
    """Resolve and load modules from a fixed ModuleArtifact set.

    ``resolve_id`` returns None to decline (the bundler keeps the import
    external). ``load`` returns None when no module matches, which the
    bundler reports as an unresolved module.
    """

    def __init__(self, modules: Sequence[ModuleArtifact]) -> None:
        self._modules = tuple(modules)

    def resolve_id(self, specifier: str, importer: str | None) -> str | None:
        if not importer:
            return specifier
        if not specifier.startswith("."):
            return None
        return specifier + ".js"

    def load(self, module_id: str) -> str | None:
        # Exact path first, then the first module whose path occurs in the id
        # (a.js also occurs in ./data.js).
        wanted = _normalize(module_id)
        for module in self._modules:
            if _normalize(module.path) == wanted:
                return module.code
        for module in self._modules:
            if module.path in module_id:
                return module.code
        logger.debug("No compiled module matches %r", module_id)
        return None
