"""Session state and its shareable URL-fragment encoding.

A session is fully described by the source document, the compiler options
and the selected output view. ``StateCodec`` turns a ``SessionState`` into a
``#<token>`` fragment (URL-safe base64 of compact JSON) and back. Decoding
fails closed: anything that is not a well-formed token yields the default
session.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import unquote

from optiplay import config

logger = logging.getLogger(__name__)


class MinifyMode(str, Enum):
    NONE = "none"
    MINIFY = "minify"
    SIMPLIFY = "simplify"


class EntryStrategy(str, Enum):
    SMART = "smart"
    SINGLE = "single"
    HOOK = "hook"
    COMPONENT = "component"


class ViewMode(str, Enum):
    MODULES = "modules"
    BUNDLES = "bundles"


DEFAULT_SOURCE = """\
import { qComponent, qHook, h, useEvent } from '@builder.io/qwik';

export const Greeter = qComponent({
  onRender: qHook((props) => (
    <div>
      <div>
        Your name:
        <input
          value={props.name}
          on:keyup={qHook<typeof Greeter>(
            (props) => (props.name = (useEvent<KeyboardEvent>().target as HTMLInputElement).value)
          )}
        />
      </div>
      <span>Hello {props.name}!</span>
    </div>
  )),
});

"""


@dataclass(frozen=True)
class SessionState:
    source_text: str
    minify_mode: MinifyMode = MinifyMode.NONE
    entry_strategy: EntryStrategy = EntryStrategy.SMART
    transpile: bool = False
    view: ViewMode = ViewMode.MODULES


def default_state() -> SessionState:
    """The zero-state session used when no usable fragment is present."""
    return SessionState(
        source_text=DEFAULT_SOURCE,
        minify_mode=MinifyMode.NONE,
        entry_strategy=EntryStrategy.SMART,
        transpile=config.DEFAULT_TRANSPILE,
        view=ViewMode(config.DEFAULT_VIEW),
    )


class FragmentPort(Protocol):
    """Where the shareable fragment lives (a browser location, a test double)."""

    def read(self) -> str:
        ...

    def write(self, fragment: str) -> None:
        ...


class MemoryFragment:
    """In-process fragment holder."""

    def __init__(self, fragment: str = "") -> None:
        self._fragment = fragment
        self.writes = 0

    def read(self) -> str:
        return self._fragment

    def write(self, fragment: str) -> None:
        self._fragment = fragment
        self.writes += 1


def _to_payload(state: SessionState) -> dict[str, Any]:
    return {
        "code": state.source_text,
        "minify": state.minify_mode.value,
        "entryStrategy": state.entry_strategy.value,
        "transpile": state.transpile,
        "view": state.view.value,
    }


def _from_payload(data: Any) -> SessionState:
    """Build a SessionState from decoded JSON.

    Missing fields take their default. Wrong types or unknown enum values
    raise ``TypeError``/``ValueError``.
    """
    if not isinstance(data, dict):
        raise TypeError(f"expected an object, got {type(data).__name__}")
    defaults = default_state()

    code = data.get("code", defaults.source_text)
    if not isinstance(code, str):
        raise TypeError("code must be a string")
    transpile = data.get("transpile", defaults.transpile)
    if not isinstance(transpile, bool):
        raise TypeError("transpile must be a boolean")

    return SessionState(
        source_text=code,
        minify_mode=MinifyMode(data.get("minify", defaults.minify_mode.value)),
        entry_strategy=EntryStrategy(data.get("entryStrategy", defaults.entry_strategy.value)),
        transpile=transpile,
        view=ViewMode(data.get("view", defaults.view.value)),
    )


def _b64decode(token: str) -> bytes:
    # Accept both the URL-safe and the standard alphabet, with or without padding.
    token = unquote(token).strip().replace("+", "-").replace("/", "_")
    token += "=" * (-len(token) % 4)
    return base64.b64decode(token, altchars=b"-_", validate=True)


class StateCodec:
    def __init__(self, prefix: str = config.FRAGMENT_PREFIX) -> None:
        self._prefix = prefix

    def encode(self, state: SessionState) -> str:
        """Return the ``<prefix><token>`` fragment for a session."""
        text = json.dumps(_to_payload(state), separators=(",", ":"), ensure_ascii=False)
        token = base64.urlsafe_b64encode(text.encode("utf-8", "surrogatepass")).decode("ascii").rstrip("=")
        return self._prefix + token

    def decode(self, fragment: str | None) -> SessionState:
        """Reconstruct a session from a fragment, falling back to defaults."""
        if not fragment or not fragment.startswith(self._prefix):
            return default_state()
        token = fragment[len(self._prefix):]
        if not token:
            return default_state()
        try:
            return _from_payload(json.loads(_b64decode(token).decode("utf-8", "surrogatepass")))
        except (ValueError, TypeError, RecursionError) as e:
            # binascii.Error, JSONDecodeError and UnicodeDecodeError are ValueErrors;
            # deeply nested JSON raises RecursionError
            logger.debug("Ignoring malformed fragment (%d chars): %s", len(token), e)
            return default_state()
