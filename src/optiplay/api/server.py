"""FastAPI server hosting one playground session."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from optiplay import config
from optiplay.api.playground import router as playground_router
from optiplay.bundler.linker import EsmLinker
from optiplay.pipeline.compiler import SubprocessCompiler
from optiplay.pipeline.diagnostics import MemorySurface
from optiplay.pipeline.orchestrator import PipelineOrchestrator

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


def default_orchestrator() -> PipelineOrchestrator:
    """Orchestrator backed by the configured compiler process and the built-in linker."""
    compiler = SubprocessCompiler()
    if not compiler.available():
        logger.warning(
            "Compiler command %r not available; the pipeline will stay idle",
            " ".join(compiler.command),
        )
        return PipelineOrchestrator(compiler=None, bundler=EsmLinker())
    return PipelineOrchestrator(compiler=compiler, bundler=EsmLinker())


def create_app(orchestrator_factory: Callable[[], PipelineOrchestrator] | None = None) -> FastAPI:
    factory = orchestrator_factory or default_orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator = factory()
        surface = MemorySurface(orchestrator.state.source_text)
        orchestrator.attach_surface(surface)
        app.state.orchestrator = orchestrator
        app.state.surface = surface
        await orchestrator.start()
        logger.info("Playground session ready (compiler available: %s)", orchestrator.compiler_available)
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(title="Optiplay", description="Optimizer playground service", lifespan=lifespan)

    # CORS for the editor front-end dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:5174"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(playground_router)
    return app


app = create_app()
