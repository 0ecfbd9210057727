"""Projection of compiler diagnostics onto an editing surface's markers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from optiplay.pipeline.compiler import Diagnostic

logger = logging.getLogger(__name__)

SEVERITY_ERROR = "error"


@dataclass(frozen=True)
class Marker:
    message: str
    severity: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int


class MarkerSurface(Protocol):
    def set_markers(self, markers: list[Marker]) -> None:
        ...


class EditingSurface(MarkerSurface, Protocol):
    """The text editor the session is bound to."""

    def get_current_text(self) -> str:
        ...

    def on_text_change(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` after every change; read the text with get_current_text."""
        ...


class MemorySurface:
    """Editing surface kept in memory (HTTP clients, tests)."""

    def __init__(self, text: str = "") -> None:
        self._text = text
        self._callbacks: list[Callable[[], None]] = []
        self.markers: list[Marker] = []

    def get_current_text(self) -> str:
        return self._text

    def on_text_change(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def set_text(self, text: str) -> None:
        self._text = text
        for cb in list(self._callbacks):
            cb()

    def set_markers(self, markers: list[Marker]) -> None:
        self.markers = list(markers)


def to_marker(diagnostic: Diagnostic) -> Marker:
    """One error marker at the diagnostic's first highlight (1:1 if it has none)."""
    if diagnostic.highlights:
        h = diagnostic.highlights[0]
        return Marker(
            message=diagnostic.message,
            severity=SEVERITY_ERROR,
            start_line=h.start_line,
            start_col=h.start_col,
            end_line=h.end_line,
            end_col=h.end_col,
        )
    return Marker(diagnostic.message, SEVERITY_ERROR, 1, 1, 1, 1)


class DiagnosticsMapper:
    def apply(self, diagnostics: Sequence[Diagnostic], surface: MarkerSurface | None) -> bool:
        """Replace every marker on ``surface`` with one per diagnostic.

        Returns False (and does nothing) when no surface is mounted yet.
        """
        if surface is None:
            logger.debug("No editing surface mounted, skipping %d marker(s)", len(diagnostics))
            return False
        markers = [to_marker(d) for d in diagnostics]
        surface.set_markers(markers)
        return True
