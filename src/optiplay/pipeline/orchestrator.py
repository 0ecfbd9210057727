"""Reactive compile → bundle pipeline for one playground session.

The orchestrator owns the session state, the generation counter and the
displayed output. Source edits go through the debouncer; option changes
trigger a run immediately. Triggers are consumed by a single control loop
that mints a generation number and starts the run as its own task, so runs
can overlap. A run may only publish while its generation is still the
latest one; anything older is dropped on arrival.

Every state change is also encoded and written to the fragment port,
independently of the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum

from optiplay import config
from optiplay.bundler.linker import EsmLinker
from optiplay.bundler.pipeline import BundleChunk, Bundler, BundlePipeline
from optiplay.pipeline.compiler import (
    CompileError,
    CompileInvoker,
    CompileOptions,
    CompileResult,
    Compiler,
    Diagnostic,
    ModuleArtifact,
)
from optiplay.pipeline.debounce import Debouncer
from optiplay.pipeline.diagnostics import DiagnosticsMapper, MarkerSurface
from optiplay.state.codec import (
    EntryStrategy,
    FragmentPort,
    MemoryFragment,
    MinifyMode,
    SessionState,
    StateCodec,
    ViewMode,
)

logger = logging.getLogger(__name__)


class PipelinePhase(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    COMPILING = "compiling"
    BUNDLING = "bundling"
    DISPLAYING = "displaying"


@dataclass(frozen=True)
class PlaygroundOutput:
    """What is currently displayed. Replaced wholesale on every publish."""

    generation: int = 0
    modules: tuple[ModuleArtifact, ...] = ()
    bundles: tuple[BundleChunk, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class _Trigger:
    reason: str
    state: SessionState
    source_text: str


class PipelineOrchestrator:
    def __init__(
        self,
        compiler: Compiler | None,
        bundler: Bundler | None = None,
        fragment: FragmentPort | None = None,
        surface: MarkerSurface | None = None,
        codec: StateCodec | None = None,
        debounce_ms: int | None = None,
        root_dir: str | None = None,
    ) -> None:
        self._codec = codec or StateCodec()
        self._fragment = fragment if fragment is not None else MemoryFragment()
        self._invoker = CompileInvoker(compiler, root_dir) if compiler is not None else None
        self._bundle_pipeline = BundlePipeline(bundler if bundler is not None else EsmLinker())
        self._mapper = DiagnosticsMapper()
        self._surface: MarkerSurface | None = None

        # The fragment is read exactly once, here.
        self._state = self._codec.decode(self._fragment.read())
        self._debounced_text = self._state.source_text
        self._output = PlaygroundOutput()
        self._phase = PipelinePhase.IDLE
        self._generation = 0
        self._latest_options: CompileOptions | None = None

        window = config.DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self._debouncer: Debouncer[str] = Debouncer(window, self._on_debounced)
        self._queue: asyncio.Queue[_Trigger] = asyncio.Queue()
        self._runs: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None
        self._subscribers: list[asyncio.Queue] = []

        if surface is not None:
            self.attach_surface(surface)

    # ── Read-only views ──

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def output(self) -> PlaygroundOutput:
        return self._output

    @property
    def phase(self) -> PipelinePhase:
        return self._phase

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def fragment(self) -> str:
        return self._fragment.read()

    @property
    def compiler_available(self) -> bool:
        return self._invoker is not None

    def displayed(self) -> tuple[ModuleArtifact, ...] | tuple[BundleChunk, ...]:
        """Artifacts for the selected view."""
        if self._state.view == ViewMode.BUNDLES:
            return self._output.bundles
        return self._output.modules

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the control loop and run the pipeline once for the initial state."""
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._control_loop(), name="pipeline-control")
        self._enqueue("start", self._debounced_text)

    async def stop(self) -> None:
        self._debouncer.cancel()
        for task in list(self._runs):
            task.cancel()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def wait_idle(self) -> None:
        """Return once no debounce is pending, no trigger is queued and no run is in flight."""
        while True:
            await self._debouncer.wait()
            if self._loop_task is None:
                # Nothing consumes the queue before start() or after stop().
                return
            await self._queue.join()
            if self._runs:
                await asyncio.gather(*list(self._runs), return_exceptions=True)
                continue
            if not self._debouncer.pending and self._queue.empty():
                return

    def attach_surface(self, surface: MarkerSurface) -> None:
        """Mount the editing surface.

        On every change notification the surface's current text becomes a
        source edit.
        """
        self._surface = surface
        on_text_change = getattr(surface, "on_text_change", None)
        if on_text_change is not None:
            on_text_change(lambda: self.edit_source(surface.get_current_text()))

    # ── Inputs ──

    def edit_source(self, text: str) -> None:
        if text == self._state.source_text:
            return
        self._replace_state(source_text=text)
        self._phase = PipelinePhase.DEBOUNCING
        self._debouncer.push(text)

    def set_options(
        self,
        minify_mode: MinifyMode | None = None,
        entry_strategy: EntryStrategy | None = None,
        transpile: bool | None = None,
    ) -> None:
        changes = {}
        if minify_mode is not None and minify_mode != self._state.minify_mode:
            changes["minify_mode"] = MinifyMode(minify_mode)
        if entry_strategy is not None and entry_strategy != self._state.entry_strategy:
            changes["entry_strategy"] = EntryStrategy(entry_strategy)
        if transpile is not None and transpile != self._state.transpile:
            changes["transpile"] = transpile
        if not changes:
            return
        self._replace_state(**changes)
        self._enqueue("options", self._debounced_text)

    def set_view(self, view: ViewMode) -> None:
        if view == self._state.view:
            return
        self._replace_state(view=ViewMode(view))

    def load_fragment(self, fragment: str) -> SessionState:
        """Re-seed the session from a shared fragment and recompute."""
        state = self._codec.decode(fragment)
        encoded = self._codec.encode(state)
        self._debouncer.cancel()
        self._state = state
        self._debounced_text = state.source_text
        self._fragment.write(encoded)
        self._enqueue("restore", self._debounced_text)
        return self._state

    # ── Publish notifications ──

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def _notify(self, event: dict) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                pass

    # ── Internals ──

    def _replace_state(self, **changes) -> None:
        state = replace(self._state, **changes)
        fragment = self._codec.encode(state)
        self._state = state
        self._fragment.write(fragment)

    def _on_debounced(self, text: str) -> None:
        self._debounced_text = text
        self._enqueue("source", text)

    def _enqueue(self, reason: str, source_text: str) -> None:
        self._queue.put_nowait(_Trigger(reason, self._state, source_text))

    async def _control_loop(self) -> None:
        while True:
            trigger = await self._queue.get()
            try:
                self._dispatch(trigger)
            except Exception:
                logger.exception("Failed to dispatch %s trigger", trigger.reason)
            finally:
                self._queue.task_done()

    def _settle_phase(self) -> None:
        if self._debouncer.pending:
            self._phase = PipelinePhase.DEBOUNCING
        elif not self._runs:
            self._phase = PipelinePhase.IDLE

    def _dispatch(self, trigger: _Trigger) -> None:
        if self._invoker is None:
            logger.debug("No compiler available, pipeline stays idle (%s)", trigger.reason)
            self._settle_phase()
            return

        options = self._invoker.build_options(trigger.state, trigger.source_text)
        if options == self._latest_options:
            logger.debug("Options unchanged since run %d, skipping %s trigger", self._generation, trigger.reason)
            self._settle_phase()
            return

        self._generation += 1
        generation = self._generation
        self._latest_options = options
        self._phase = PipelinePhase.COMPILING
        logger.debug("Run %d started (%s)", generation, trigger.reason)

        task = asyncio.create_task(self._run(generation, options), name=f"pipeline-run-{generation}")
        self._runs.add(task)
        task.add_done_callback(self._on_run_done)

    def _on_run_done(self, task: asyncio.Task) -> None:
        self._runs.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Pipeline run crashed", exc_info=task.exception())
        self._settle_phase()

    def _is_stale(self, generation: int, stage: str) -> bool:
        if generation != self._generation:
            logger.debug("Discarding %s result of run %d (latest is %d)", stage, generation, self._generation)
            return True
        return False

    async def _run(self, generation: int, options: CompileOptions) -> None:
        t0 = time.perf_counter()
        try:
            result = await self._invoker.invoke(options)
        except CompileError:
            logger.exception("Compile run %d failed, keeping previous output", generation)
            if generation == self._generation:
                # Let an identical retry through.
                self._latest_options = None
            return

        if self._is_stale(generation, "compile"):
            return

        bundles: tuple[BundleChunk, ...] = ()
        if options.transpile:
            self._phase = PipelinePhase.BUNDLING
            chunks = await self._bundle_pipeline.run(result.modules)
            if self._is_stale(generation, "bundle"):
                return
            bundles = self._output.bundles if chunks is None else chunks

        self._publish(generation, result, bundles)
        logger.info("Run %d published in %.0fms", generation, (time.perf_counter() - t0) * 1000)

    def _publish(self, generation: int, result: CompileResult, bundles: tuple[BundleChunk, ...]) -> None:
        self._phase = PipelinePhase.DISPLAYING
        self._output = PlaygroundOutput(
            generation=generation,
            modules=result.modules,
            bundles=bundles,
            diagnostics=result.diagnostics,
        )
        self._mapper.apply(result.diagnostics, self._surface)
        self._notify({"type": "published", "generation": generation})
        self._phase = PipelinePhase.DEBOUNCING if self._debouncer.pending else PipelinePhase.IDLE
