"""FastAPI server: runs tasks, streams their events, and takes approval decisions."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .agent import AgentLoop, Message, Task, ToolRegistry
from .agent.registry import load_tool_modules
from .config import get_config
from .keystore import EnvKeyStore
from .llm import ModelClient, get_provider

logger = logging.getLogger("taskloop.server")

# Global instances
model_client: ModelClient | None = None
registry: ToolRegistry | None = None
agent: AgentLoop | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global model_client, registry, agent

    cfg = get_config()
    spec = get_provider(cfg.provider)
    logger.info(f"Starting taskloop server on {cfg.server_host}:{cfg.server_port}")
    logger.info(f"  Provider: {spec.label} (model: {cfg.model})")

    registry = ToolRegistry(default_timeout=cfg.tool_timeout)
    try:
        load_tool_modules(registry, cfg.tool_modules)
    except (ImportError, ValueError) as e:
        logger.error(f"Tool module loading failed: {e}")
    logger.info(f"  Tools: {len(registry)} registered")

    model_client = ModelClient(cfg, keys=EnvKeyStore())
    agent = AgentLoop(model_client, registry, config=cfg)

    provider_ok = await model_client.health_check()
    logger.info(f"  Provider status: {'connected' if provider_ok else 'unavailable'}")

    yield

    if agent:
        for task_id in list(agent.tasks):
            agent.cancel(task_id)
    if model_client:
        await model_client.close()
    logger.info("taskloop server shutdown complete")


app = FastAPI(
    title="taskloop",
    version="0.2.0",
    description="Tool-using agent loop with human approval",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request/Response Models ─────────────────────────────────────────

class TaskRequest(BaseModel):
    request: str
    system_prompt: str = ""
    history: list[dict[str, Any]] = Field(default_factory=list)
    max_turns: int | None = None
    stream: bool = True


class ApprovalDecision(BaseModel):
    approved: bool


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Agent not initialized"}, status_code=503)


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Provider connectivity and agent statistics."""
    cfg = get_config()
    provider_ok = await model_client.health_check() if model_client else False
    return JSONResponse({
        "status": "ok" if provider_ok else "degraded",
        "provider": {
            "id": cfg.provider,
            "label": get_provider(cfg.provider).label,
            "model": cfg.model,
            "connected": provider_ok,
        },
        "agent": agent.get_stats() if agent else {},
    })


@app.get("/api/tools")
async def list_tools() -> JSONResponse:
    """List registered tools with their permission tiers."""
    if not agent:
        return JSONResponse({"count": 0, "tools": [], "error": "Agent not initialized"}, status_code=503)
    tools = agent.registry.list_tools()
    return JSONResponse({"count": len(tools), "tools": tools})


@app.post("/api/tasks", response_model=None)
async def create_task(request: TaskRequest) -> EventSourceResponse | JSONResponse:
    """Start a task; stream its events or wait for the final result."""
    if not agent:
        return _not_ready()

    history = [Message.from_dict(m) for m in request.history]
    task = agent.create_task(
        request.request,
        system_prompt=request.system_prompt,
        history=history,
        max_turns=request.max_turns,
    )

    if request.stream:
        return EventSourceResponse(
            _stream_task_events(task),
            media_type="text/event-stream",
        )

    events = await agent.run_to_completion(task)
    return JSONResponse({
        "task_id": task.id,
        "status": task.status.value,
        "final_text": task.final_text,
        "error": task.error,
        "events": [e.to_dict() for e in events],
    })


async def _stream_task_events(task: Task) -> AsyncIterator[dict]:
    """Stream task events as SSE."""
    async for event in agent.run(task):
        yield {
            "event": event.type,
            "id": str(event.seq),
            "data": json.dumps(event.to_dict(), default=str),
        }


@app.post("/api/tasks/{task_id}/cancel")
async def cancel_task(task_id: str) -> JSONResponse:
    if not agent:
        return _not_ready()
    task = agent.tasks.get(task_id)
    if task is None:
        return JSONResponse({"status": "error", "message": f"Unknown task {task_id}"}, status_code=404)
    if not agent.cancel(task_id):
        return JSONResponse(
            {"status": "error", "message": f"Task already {task.status.value}"}, status_code=409,
        )
    return JSONResponse({"status": "ok", "message": "Cancellation requested"})


@app.get("/api/approvals")
async def list_approvals(task_id: str | None = None) -> JSONResponse:
    if not agent:
        return _not_ready()
    pending = [r.to_dict() for r in agent.broker.pending(task_id)]
    return JSONResponse({"count": len(pending), "pending": pending})


@app.post("/api/approvals/{request_id}")
async def resolve_approval(request_id: str, decision: ApprovalDecision) -> JSONResponse:
    """Approve or deny a pending tool call. Late or duplicate answers get 404."""
    if not agent:
        return _not_ready()
    if not agent.broker.resolve(request_id, decision.approved):
        return JSONResponse(
            {"status": "error", "message": "Unknown or already resolved approval request"},
            status_code=404,
        )
    return JSONResponse({"status": "ok", "approved": decision.approved})


@app.get("/api/audit")
async def get_audit(limit: int = 100) -> JSONResponse:
    """Recent permission classifications (credentials redacted)."""
    if not agent:
        return _not_ready()
    entries = agent.gate.recent_audit(limit)
    return JSONResponse({"count": len(entries), "entries": entries})


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server() -> None:
    """Run the API server."""
    import uvicorn

    cfg = get_config()

    uvicorn.run(
        "taskloop.engine.server:app",
        host=cfg.server_host,
        port=cfg.server_port,
        log_level="warning",
        log_config=None,      # keep our logging setup
        reload=False,
    )
