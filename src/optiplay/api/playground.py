"""API router — health, session state, output, SSE."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from optiplay.pipeline.diagnostics import MemorySurface
from optiplay.pipeline.orchestrator import PipelineOrchestrator
from optiplay.state.codec import EntryStrategy, MinifyMode, ViewMode

logger = logging.getLogger(__name__)

router = APIRouter()


def _orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _surface(request: Request) -> MemorySurface:
    return request.app.state.surface


def _state_payload(orchestrator: PipelineOrchestrator) -> dict:
    state = orchestrator.state
    return {
        "source": state.source_text,
        "minify": state.minify_mode.value,
        "entry_strategy": state.entry_strategy.value,
        "transpile": state.transpile,
        "view": state.view.value,
        "fragment": orchestrator.fragment,
    }


class SourceRequest(BaseModel):
    source: str


class OptionsRequest(BaseModel):
    minify: MinifyMode | None = None
    entry_strategy: EntryStrategy | None = None
    transpile: bool | None = None


class ViewRequest(BaseModel):
    view: ViewMode


class RestoreRequest(BaseModel):
    fragment: str


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/state")
def get_state(request: Request):
    return _state_payload(_orchestrator(request))


@router.put("/state/source")
async def put_source(req: SourceRequest, request: Request, wait: bool = Query(False)):
    """Replace the document text, as if typed into the editor."""
    _surface(request).set_text(req.source)
    orchestrator = _orchestrator(request)
    if wait:
        await orchestrator.wait_idle()
    return _state_payload(orchestrator)


@router.put("/state/options")
async def put_options(req: OptionsRequest, request: Request, wait: bool = Query(False)):
    orchestrator = _orchestrator(request)
    orchestrator.set_options(
        minify_mode=req.minify,
        entry_strategy=req.entry_strategy,
        transpile=req.transpile,
    )
    if wait:
        await orchestrator.wait_idle()
    return _state_payload(orchestrator)


@router.put("/state/view")
def put_view(req: ViewRequest, request: Request):
    orchestrator = _orchestrator(request)
    orchestrator.set_view(req.view)
    return _state_payload(orchestrator)


@router.post("/state/restore")
async def restore_state(req: RestoreRequest, request: Request, wait: bool = Query(False)):
    """Load a shared ``#<token>`` fragment; malformed fragments give the default session."""
    orchestrator = _orchestrator(request)
    state = orchestrator.load_fragment(req.fragment)
    _surface(request).set_text(state.source_text)
    if wait:
        await orchestrator.wait_idle()
    return _state_payload(orchestrator)


@router.get("/output")
def get_output(request: Request):
    orchestrator = _orchestrator(request)
    output = orchestrator.output
    artifacts = []
    for artifact in orchestrator.displayed():
        item = {"path": artifact.path, "code": artifact.code}
        if hasattr(artifact, "is_entry_point"):
            item["is_entry_point"] = artifact.is_entry_point
        artifacts.append(item)
    return {
        "generation": output.generation,
        "phase": orchestrator.phase.value,
        "view": orchestrator.state.view.value,
        "artifacts": artifacts,
        "diagnostics": [
            {
                "message": d.message,
                "highlights": [
                    {
                        "start_line": h.start_line,
                        "start_col": h.start_col,
                        "end_line": h.end_line,
                        "end_col": h.end_col,
                    }
                    for h in d.highlights
                ],
            }
            for d in output.diagnostics
        ],
        "markers": [
            {
                "message": m.message,
                "severity": m.severity,
                "start_line": m.start_line,
                "start_col": m.start_col,
                "end_line": m.end_line,
                "end_col": m.end_col,
            }
            for m in _surface(request).markers
        ],
    }


# ── SSE streaming ──


@router.get("/events")
async def stream_events(request: Request):
    """SSE stream of publish events."""
    orchestrator = _orchestrator(request)
    sub_queue = orchestrator.subscribe()

    async def event_generator():
        try:
            yield f"data: {json.dumps({'type': 'current', 'generation': orchestrator.output.generation})}\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(sub_queue.get(), timeout=30)
                    yield f"data: {json.dumps(event)}\n\n"
                except asyncio.TimeoutError:
                    # Send keepalive
                    yield ": keepalive\n\n"
        finally:
            orchestrator.unsubscribe(sub_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
