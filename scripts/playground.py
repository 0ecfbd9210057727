#!/usr/bin/env python3
"""CLI: Encode/decode shareable fragments and run one pipeline pass on a file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import shlex
import sys
from dataclasses import asdict
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from optiplay import config
from optiplay.bundler.linker import EsmLinker
from optiplay.pipeline.compiler import SubprocessCompiler
from optiplay.pipeline.orchestrator import PipelineOrchestrator
from optiplay.state.codec import (
    EntryStrategy,
    MemoryFragment,
    MinifyMode,
    SessionState,
    StateCodec,
    ViewMode,
)


def _add_state_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("file", type=Path, help="Source document (.tsx)")
    parser.add_argument(
        "--minify", choices=[m.value for m in MinifyMode], default=MinifyMode.NONE.value,
    )
    parser.add_argument(
        "--entry-strategy", choices=[s.value for s in EntryStrategy], default=EntryStrategy.SMART.value,
    )
    parser.add_argument("--transpile", action="store_true", help="Transpile and bundle the output")
    parser.add_argument(
        "--view", choices=[v.value for v in ViewMode], default=ViewMode.MODULES.value,
    )


def _state_from_args(args: argparse.Namespace) -> SessionState:
    if not args.file.is_file():
        print(f"Error: {args.file} is not a file.", file=sys.stderr)
        sys.exit(1)
    return SessionState(
        source_text=args.file.read_text(),
        minify_mode=MinifyMode(args.minify),
        entry_strategy=EntryStrategy(args.entry_strategy),
        transpile=args.transpile,
        view=ViewMode(args.view),
    )


def cmd_encode(args: argparse.Namespace) -> None:
    print(StateCodec().encode(_state_from_args(args)))


def cmd_decode(args: argparse.Namespace) -> None:
    state = StateCodec().decode(args.fragment)
    data = asdict(state)
    for key, value in data.items():
        if hasattr(value, "value"):
            data[key] = value.value
    print(json.dumps(data, indent=2))


async def _compile_once(state: SessionState, command: list[str] | None) -> PipelineOrchestrator:
    compiler = SubprocessCompiler(command)
    if not compiler.available():
        print(
            f"Error: compiler command {' '.join(compiler.command)!r} not found. "
            "Set COMPILER_COMMAND in .env or pass --compiler.",
            file=sys.stderr,
        )
        sys.exit(1)
    fragment = MemoryFragment(StateCodec().encode(state))
    orchestrator = PipelineOrchestrator(compiler=compiler, bundler=EsmLinker(), fragment=fragment)
    await orchestrator.start()
    try:
        await orchestrator.wait_idle()
    finally:
        await orchestrator.stop()
    return orchestrator


def cmd_compile(args: argparse.Namespace) -> None:
    state = _state_from_args(args)
    command = shlex.split(args.compiler) if args.compiler else None
    orchestrator = asyncio.run(_compile_once(state, command))

    output = orchestrator.output
    if output.generation == 0:
        print("Error: compilation failed (see log).", file=sys.stderr)
        sys.exit(1)

    for artifact in orchestrator.displayed():
        print(f"// ── {artifact.path} ──")
        print(artifact.code)
    for diag in output.diagnostics:
        where = ""
        if diag.highlights:
            h = diag.highlights[0]
            where = f"{config.INPUT_PATH}:{h.start_line}:{h.start_col}: "
        print(f"{where}error: {diag.message}", file=sys.stderr)
    print(f"\nFragment: {orchestrator.fragment}", file=sys.stderr)
    if output.diagnostics:
        sys.exit(2)


def main() -> None:
    parser = argparse.ArgumentParser(description="Optimizer playground tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_encode = sub.add_parser("encode", help="Print the shareable fragment for a document")
    _add_state_args(p_encode)
    p_encode.set_defaults(func=cmd_encode)

    p_decode = sub.add_parser("decode", help="Print the session stored in a fragment")
    p_decode.add_argument("fragment", help="Fragment including the leading '#'")
    p_decode.set_defaults(func=cmd_decode)

    p_compile = sub.add_parser("compile", help="Compile (and bundle with --transpile) a document")
    _add_state_args(p_compile)
    p_compile.add_argument(
        "--compiler", type=str, default=None,
        help="Compiler command (default: COMPILER_COMMAND from the environment)",
    )
    p_compile.set_defaults(func=cmd_compile)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    args.func(args)


if __name__ == "__main__":
    main()
