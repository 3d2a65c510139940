"""
FastAPI Application — operations surface for the outreach engine.

Provides:
- Health and runtime status
- Per-tenant queue metrics, pause and resume
- Worker metrics and a housekeeping trigger
- Sequence initiation, reply intake and action cancellation

The OutreachRuntime is created and started in the lifespan, so the tickers,
queues and workers live exactly as long as the server process.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.logging_config import configure_logging
from config.settings import Settings, get_settings
from core.runtime import OutreachRuntime
from core.sequencing import SequenceError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class InitiateSequenceRequest(BaseModel):
    person_ids: list[str]
    send_immediately: bool = False


class ReplyRequest(BaseModel):
    content: str


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, runtime: OutreachRuntime = None) -> FastAPI:
    """
    Build the ops app. A prebuilt runtime may be injected (tests); otherwise
    one is constructed from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.logging)
        rt = runtime or OutreachRuntime(cfg)
        app.state.runtime = rt
        await rt.start()
        logger.info("outreach_api_started", app_name=cfg.app_name)
        yield
        await rt.stop()
        logger.info("outreach_api_stopped")

    app = FastAPI(
        title="Outreach Engine API",
        description="Scheduling and execution engine for multi-step outreach sequences",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _runtime(request: Request) -> OutreachRuntime:
    return request.app.state.runtime


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        rt = _runtime(request)
        return {
            "status": "healthy" if rt.started else "starting",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channels": [c.value for c in rt.channels.get_available()],
            **await rt.status(),
        }

    # ══════════════════════════════════════════════════════════
    #  QUEUES
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/queues")
    async def list_queues(request: Request):
        rt = _runtime(request)
        result: dict[str, Any] = {}
        for tenant_id in rt.queue_manager.active_tenants():
            metrics = await rt.queue_manager.get_queue_metrics(tenant_id)
            if metrics is not None:
                result[tenant_id] = metrics.model_dump()
        return result

    @app.get("/api/v1/queues/{tenant_id}/metrics")
    async def queue_metrics(tenant_id: str, request: Request):
        metrics = await _runtime(request).queue_manager.get_queue_metrics(tenant_id)
        if metrics is None:
            raise HTTPException(404, "No queue for tenant")
        return {"tenant_id": tenant_id, **metrics.model_dump()}

    @app.post("/api/v1/queues/{tenant_id}/pause")
    async def pause_queue(tenant_id: str, request: Request):
        if not await _runtime(request).queue_manager.pause_queue(tenant_id):
            raise HTTPException(404, "No queue for tenant")
        return {"tenant_id": tenant_id, "status": "paused"}

    @app.post("/api/v1/queues/{tenant_id}/resume")
    async def resume_queue(tenant_id: str, request: Request):
        if not await _runtime(request).resume_queue(tenant_id):
            raise HTTPException(404, "No queue for tenant")
        return {"tenant_id": tenant_id, "status": "resumed"}

    # ══════════════════════════════════════════════════════════
    #  WORKERS & MAINTENANCE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/workers")
    async def list_workers(request: Request):
        return _runtime(request).worker_manager.get_worker_metrics()

    @app.post("/api/v1/maintenance/cleanup")
    async def run_cleanup(request: Request):
        return await _runtime(request).run_housekeeping()

    # ══════════════════════════════════════════════════════════
    #  SEQUENCES, REPLIES, ACTIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/sequences/{sequence_id}/initiate")
    async def initiate_sequence(sequence_id: str, req: InitiateSequenceRequest, request: Request):
        try:
            created = await _runtime(request).sequences.initiate_sequence(
                sequence_id, req.person_ids, send_immediately=req.send_immediately,
            )
        except SequenceError as e:
            raise HTTPException(400, str(e))
        return {"sequence_id": sequence_id, "conversation_ids": created}

    @app.post("/api/v1/conversations/{conversation_id}/reply")
    async def conversation_reply(conversation_id: str, req: ReplyRequest, request: Request):
        if not await _runtime(request).sequences.handle_reply(conversation_id, req.content):
            raise HTTPException(404, "Conversation not found")
        return {"conversation_id": conversation_id, "status": "needs_review"}

    @app.post("/api/v1/actions/{action_id}/cancel")
    async def cancel_action(action_id: str, request: Request):
        rt = _runtime(request)
        if await rt.actions.get_action(action_id) is None:
            raise HTTPException(404, "Action not found")
        if not await rt.sequences.cancel_action(action_id):
            raise HTTPException(409, "Action already finished")
        return {"action_id": action_id, "status": "cancelled"}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
