"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
import shlex

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Compiler
COMPILER_COMMAND: list[str] = shlex.split(os.getenv("COMPILER_COMMAND", ""))
COMPILER_ROOT_DIR: str = os.getenv("COMPILER_ROOT_DIR", "/internal/project")

# Pipeline
DEBOUNCE_MS: int = int(os.getenv("DEBOUNCE_MS", "200"))

# Session defaults (used when no fragment is present)
DEFAULT_TRANSPILE: bool = _flag("DEFAULT_TRANSPILE", "false")
DEFAULT_VIEW: str = os.getenv("DEFAULT_VIEW", "modules")

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Fixed names
INPUT_PATH = "input.tsx"
ENTRY_ID = "input.js"
FRAGMENT_PREFIX = "#"
