"""
DevMind — FastAPI application entry point.

Provides a REST API over the orchestrator:
- /health — service health status
- /api/projects — submit a project (template plan or explicit plan)
- /api/batches/{id} — batch status; /cancel to cancel it
- /api/batches/{id}/events — resumable Server-Sent Events stream
- /api/tasks/{id}/approve|reject|unblock|cancel — operator actions

Run with ``devmind serve`` or ``run_server()``.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from devmind import __version__
from devmind.config.settings import Settings, get_settings
from devmind.di_container import get_container, init_container, shutdown_container
from devmind.exceptions_unified import DevMindException

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ConstraintsModel(BaseModel):
    budget: Optional[int] = Field(default=None, ge=0, description="Maximum worker invocations")
    deadline: Optional[float] = Field(default=None, description="Unix timestamp")


class ProjectRequest(BaseModel):
    description: str = Field(min_length=1)
    constraints: Optional[ConstraintsModel] = None
    plan: Optional[Dict[str, Any]] = None


class ReviewRequest(BaseModel):
    rationale: str = "approved"


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class NoteRequest(BaseModel):
    note: str = "precondition resolved"


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


async def _orchestrator():
    """Recovered orchestrator with its scheduling loop running."""
    orchestrator = await get_container().ready_orchestrator()
    await orchestrator.start()
    return orchestrator


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info("DevMind API starting up")
    await _orchestrator()
    yield
    await shutdown_container()
    logger.info("DevMind API shutting down")


app = FastAPI(
    title="DevMind",
    version=__version__,
    description="DevMind orchestration core",
    debug=get_settings().debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DevMindException)
async def devmind_exception_handler(request: Request, exc: DevMindException):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Health check — reports orchestrator state."""
    container = get_container()
    orchestrator = container.orchestrator
    body = {
        "status": "halted" if orchestrator.halted else "healthy",
        "version": __version__,
        "services": container.status(),
        "sequence": container.store.sequence,
        "agents": [agent.to_dict() for agent in container.registry.list_agents()],
    }
    if orchestrator.halted:
        return JSONResponse(content=body, status_code=503)
    return body


@app.post("/api/projects", status_code=201)
async def submit_project(req: ProjectRequest):
    """Plan and submit a project; returns the batch id and its initial status."""
    orchestrator = await _orchestrator()
    constraints = req.constraints.model_dump() if req.constraints else None
    batch_id = orchestrator.submit_project(req.description, constraints=constraints, plan=req.plan)
    return {"batch_id": batch_id, "status": orchestrator.status(batch_id).to_dict()}


@app.get("/api/batches/{batch_id}")
async def batch_status(batch_id: str):
    orchestrator = await _orchestrator()
    return orchestrator.status(batch_id).to_dict()


@app.post("/api/batches/{batch_id}/cancel")
async def cancel_batch(batch_id: str):
    orchestrator = await _orchestrator()
    cancelled = await orchestrator.cancel(batch_id)
    return {"batch_id": batch_id, "cancelled": cancelled}


@app.get("/api/batches/{batch_id}/events")
async def batch_events(
    batch_id: str,
    after: int = 0,
    last_event_id: Optional[str] = Header(default=None),
):
    """Stream a batch's events as Server-Sent Events.

    Resume with ``?after=<sequence>`` or the standard Last-Event-ID header.
    """
    orchestrator = await _orchestrator()
    if last_event_id and last_event_id.isdigit():
        after = max(after, int(last_event_id))
    orchestrator.store.get_batch(batch_id)

    async def event_generator():
        async for event in orchestrator.events.stream(batch_id, after, heartbeat=HEARTBEAT_SECONDS):
            if event is None:
                yield {"event": "ping", "data": ""}
                continue
            yield {
                "id": str(event.sequence),
                "event": event.kind,
                "data": json.dumps(event.to_dict()),
            }

    return EventSourceResponse(event_generator())


@app.post("/api/tasks/{task_id}/approve")
async def approve_task(task_id: str, req: Optional[ReviewRequest] = None):
    orchestrator = await _orchestrator()
    record = await orchestrator.approve(task_id, (req or ReviewRequest()).rationale)
    return record.to_dict()


@app.post("/api/tasks/{task_id}/reject")
async def reject_task(task_id: str, req: RejectRequest):
    orchestrator = await _orchestrator()
    record = await orchestrator.reject(task_id, req.reason)
    return record.to_dict()


@app.post("/api/tasks/{task_id}/unblock")
async def unblock_task(task_id: str, req: Optional[NoteRequest] = None):
    orchestrator = await _orchestrator()
    record = await orchestrator.unblock(task_id, (req or NoteRequest()).note)
    return record.to_dict()


@app.post("/api/tasks/{task_id}/cancel")
async def cancel_task(task_id: str):
    orchestrator = await _orchestrator()
    cancelled = await orchestrator.cancel_task(task_id)
    return {"task_id": task_id, "cancelled": cancelled}


def run_server(
    settings: Optional[Settings] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """Run the API with uvicorn.

    Args:
        settings: Settings for the container; defaults to the cached ones
        host: Host to bind to; defaults to ``settings.api_host``
        port: Port to bind to; defaults to ``settings.api_port``
    """
    import uvicorn

    settings = settings or get_settings()
    init_container(settings)
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
