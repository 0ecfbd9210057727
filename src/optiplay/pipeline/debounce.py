"""Quiescence-window debouncing on the running asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer(Generic[T]):
    """Emit the latest pushed value once ``window_ms`` passes without a newer one.

    Intermediate values are dropped, never queued. Each push restarts the
    timer. Must be used from within a running event loop.
    """

    def __init__(self, window_ms: int, on_emit: Callable[[T], None]) -> None:
        if window_ms < 0:
            raise ValueError(f"window_ms must be >= 0, got {window_ms}")
        self._window = window_ms / 1000
        self._on_emit = on_emit
        self._handle: asyncio.TimerHandle | None = None
        self._value: T | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def push(self, value: T) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._value = value
        self._idle.clear()
        self._handle = asyncio.get_running_loop().call_later(self._window, self._fire)

    def cancel(self) -> None:
        """Drop the pending value without emitting it."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._value = None
        self._idle.set()

    async def wait(self) -> None:
        """Return once nothing is pending."""
        await self._idle.wait()

    def _fire(self) -> None:
        value = self._value
        self._handle = None
        self._value = None
        try:
            self._on_emit(value)
        except Exception:
            logger.exception("Debounced callback failed")
        finally:
            self._idle.set()
