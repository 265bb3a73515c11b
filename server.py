"""
Deliberator Web Server
======================
Thin FastAPI shell over the deliberation pipeline: REST endpoints for
models, circuit breakers and sessions, plus an SSE stream of progress
events while a query is deliberated.

Run with:
    python server.py
    # or: uvicorn server:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, TypeAdapter

from deliberator.config import Settings
from deliberator.direct_handler import DirectQueryHandler
from deliberator.errors import (
    ConsensusError,
    DeliberationError,
    DeliberationTimeoutError,
    InsufficientResponsesError,
    ValidationError,
)
from deliberator.observer import Event, EventBus, EventType, event_bus
from deliberator.orchestrator import DeliberationOrchestrator
from deliberator.providers import ProviderFactory
from deliberator.query_router import QueryRouter
from deliberator.registry import ModelRegistry
from deliberator.resilience import circuit_breaker_states, reset_all_circuit_breakers
from deliberator.schemas import Query, QueryMode, Session, SessionResult, utcnow
from deliberator.session_store import InMemorySessionStore, SqliteSessionStore

# ------------------------------------------------------------------ #
#  Logging
# ------------------------------------------------------------------ #
_handlers: list[logging.Handler] = [logging.StreamHandler()]
_log_file = os.getenv("DELIBERATOR_LOG_FILE")
if _log_file:
    _handlers.append(logging.FileHandler(Path(_log_file), encoding="utf-8"))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=_handlers,
)
logger = logging.getLogger("deliberator.server")

# ------------------------------------------------------------------ #
#  App state
# ------------------------------------------------------------------ #
app = FastAPI(title="Deliberator", version="1.0.0")

settings = Settings.from_env()
session_store = (
    SqliteSessionStore(settings.session_db) if settings.session_db else InMemorySessionStore()
)
registry = ModelRegistry()
_registry_loaded = False

_session_adapter = TypeAdapter(Session)

# ------------------------------------------------------------------ #
#  Security: admin endpoint protection
# ------------------------------------------------------------------ #
_PRODUCTION_MODE = os.getenv("DELIBERATOR_PRODUCTION_MODE", "").lower() in ("1", "true", "yes")
_API_AUTH_TOKEN = os.getenv("DELIBERATOR_API_AUTH_TOKEN", "")
_admin_audit_log = logging.getLogger("deliberator.admin_audit")


def _verify_admin_auth(authorization: str | None) -> None:
    """Raise 401/403 if an admin call is not authorised.

    In **production mode** (``DELIBERATOR_PRODUCTION_MODE=1``):
    * If ``DELIBERATOR_API_AUTH_TOKEN`` is set, the caller must supply it via
      ``Authorization: Bearer <token>``.
    * If no token is configured, admin endpoints are **disabled**.
    """
    if not _PRODUCTION_MODE:
        return  # open access in development
    if not _API_AUTH_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Admin endpoints disabled in production mode "
                   "(set DELIBERATOR_API_AUTH_TOKEN to enable).",
        )
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token.")
    if authorization[len("Bearer "):] != _API_AUTH_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid auth token.")


# ------------------------------------------------------------------ #
#  Request models
# ------------------------------------------------------------------ #

class QueryRequest(BaseModel):
    query: str
    user_id: str = "anonymous"
    mode: QueryMode = QueryMode.MULTI
    models: list[str] | None = None


class ModelToggle(BaseModel):
    enabled: bool


class PruneRequest(BaseModel):
    older_than_hours: float = Field(gt=0)


# ------------------------------------------------------------------ #
#  Helpers
# ------------------------------------------------------------------ #

async def _get_registry() -> ModelRegistry:
    """Populate the registry with every available hosted provider on first use."""
    global _registry_loaded
    if not _registry_loaded:
        _registry_loaded = True
        for provider in await ProviderFactory.create_available():
            provider.configure_resilience(settings.resilience)
            registry.register(provider)
        logger.info("Registered responders: %s", [m.name for m in registry.all()])
    return registry


def _build_router(models: ModelRegistry, bus: EventBus | None = None) -> QueryRouter:
    return QueryRouter(
        models,
        DirectQueryHandler(session_store, timeout=settings.collector.timeout, event_bus=bus),
        DeliberationOrchestrator(
            session_store, settings, event_bus=bus, enable_logging_observer=False,
        ),
        limits=settings.deliberation,
    )


def _session_json(session: Session) -> dict[str, Any]:
    return _session_adapter.dump_python(session, mode="json")


def _result_json(result: SessionResult) -> dict[str, Any]:
    return {
        "session_id": result.session_id,
        "result": result.result,
        "session": _session_json(result.session),
    }


def _status_for(exc: DeliberationError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, DeliberationTimeoutError):
        return 504
    if isinstance(exc, (InsufficientResponsesError, ConsensusError)):
        return 502
    return 500


def _event_json(event: Event) -> dict[str, Any]:
    payload = event.payload or {}
    try:
        json.dumps(payload)
    except (TypeError, ValueError):
        payload = {k: str(v) for k, v in payload.items()}
    return {
        "type": event.event_type.name,
        "message": event.message,
        "payload": payload,
        "session_id": event.session_id,
        "timestamp": time.time(),
    }


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ------------------------------------------------------------------ #
#  Models & circuits
# ------------------------------------------------------------------ #

@app.get("/api/models")
async def list_models():
    """Return registered responders with their enabled flag."""
    models = await _get_registry()
    return {
        "models": [
            {
                "id": m.name,
                "display_name": m.display_name,
                "provider": m.provider,
                "enabled": m.enabled,
            }
            for m in models.all()
        ]
    }


@app.get("/api/models/health")
async def models_health():
    models = await _get_registry()
    return {"health": await models.health_check()}


@app.patch("/api/models/{model_id}")
async def toggle_model(
    model_id: str,
    body: ModelToggle,
    authorization: str | None = Header(default=None),
):
    _verify_admin_auth(authorization)
    models = await _get_registry()
    try:
        models.set_enabled(model_id, body.enabled)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Model not found: {model_id}")
    _admin_audit_log.info("Model %s enabled=%s", model_id, body.enabled)
    return {"id": model_id, "enabled": body.enabled}


@app.get("/api/circuits")
async def list_circuits():
    """Snapshot of every circuit breaker in the process."""
    return {"circuits": circuit_breaker_states()}


@app.post("/api/circuits/reset")
async def reset_circuits(authorization: str | None = Header(default=None)):
    _verify_admin_auth(authorization)
    reset_all_circuit_breakers()
    _admin_audit_log.info("All circuit breakers reset")
    return {"status": "ok"}


# ------------------------------------------------------------------ #
#  Queries
# ------------------------------------------------------------------ #

@app.post("/api/query")
async def run_query(req: QueryRequest):
    """Route a query and return the finished session as JSON."""
    router = _build_router(await _get_registry())
    query = Query.create(req.query, req.user_id, req.models)
    logger.info("=== NEW QUERY === mode=%s models=%s query=%r", req.mode.value, req.models, req.query[:80])
    try:
        result = await router.route(query, req.mode)
    except DeliberationError as exc:
        logger.warning("Query %s failed: %s: %s", query.id, type(exc).__name__, exc)
        raise HTTPException(status_code=_status_for(exc), detail=f"{type(exc).__name__}: {exc}")
    return _result_json(result)


@app.post("/api/query/stream")
async def stream_query(req: QueryRequest):
    """Route a query and stream progress events via SSE, then the result."""
    models = await _get_registry()

    async def event_stream():
        events_queue: asyncio.Queue[dict] = asyncio.Queue()

        routed = set(req.models) if req.models else {m.name for m in models.enabled()}

        def on_event(event: Event) -> None:
            events_queue.put_nowait(_event_json(event))

        def on_circuit(event: Event) -> None:
            # the global bus carries transitions for every session in the process
            if event.payload.get("model") in routed:
                on_event(event)

        bus = EventBus()
        bus.subscribe_all(on_event)
        event_bus.subscribe(EventType.CIRCUIT_STATE, on_circuit)

        router = _build_router(models, bus)
        query = Query.create(req.query, req.user_id, req.models)
        result_holder: dict[str, Any] = {}

        async def _run() -> None:
            try:
                result_holder["result"] = _result_json(await router.route(query, req.mode))
            except DeliberationError as exc:
                logger.warning("Streamed query %s failed: %s", query.id, exc)
                result_holder["error"] = f"{type(exc).__name__}: {exc}"
            except Exception as exc:
                logger.error("Streamed query %s crashed", query.id, exc_info=True)
                result_holder["error"] = f"{type(exc).__name__}: {exc}"

        task = asyncio.create_task(_run())
        try:
            while not task.done() or not events_queue.empty():
                try:
                    data = await asyncio.wait_for(events_queue.get(), timeout=0.5)
                    yield _sse(data)
                except asyncio.TimeoutError:
                    yield _sse({"type": "HEARTBEAT", "message": "", "payload": {}})

            if "error" in result_holder:
                yield _sse({"type": "ERROR", "message": result_holder["error"], "payload": {}})
            else:
                yield _sse({"type": "RESULT", "message": "Deliberation complete.",
                            "payload": result_holder.get("result", {})})
            yield _sse({"type": "STREAM_END", "message": "Done", "payload": {}})
        finally:
            event_bus.unsubscribe_all(on_circuit)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


# ------------------------------------------------------------------ #
#  Sessions
# ------------------------------------------------------------------ #

@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    session = await session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_json(session)


@app.get("/api/sessions")
async def list_sessions(user_id: str, mode: QueryMode | None = None):
    sessions = await session_store.list_sessions(user_id, mode=mode)
    return {"sessions": [_session_json(s) for s in sessions]}


@app.post("/api/sessions/prune")
async def prune_sessions(
    body: PruneRequest,
    authorization: str | None = Header(default=None),
):
    """Delete sessions created more than ``older_than_hours`` ago."""
    _verify_admin_auth(authorization)
    cutoff = utcnow() - timedelta(hours=body.older_than_hours)
    deleted = await session_store.delete_older_than(cutoff)
    _admin_audit_log.info("Pruned %d session(s) older than %s", deleted, cutoff.isoformat())
    return {"status": "ok", "deleted": deleted}


# ------------------------------------------------------------------ #
#  Run
# ------------------------------------------------------------------ #
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=True)
