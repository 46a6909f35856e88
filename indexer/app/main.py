import json
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis
import uvicorn

from .classifier import InstructionClassifier
from .db import EventStore
from .ledger import LedgerClient, StateReconciler
from .models import WebhookBody
from .pipeline import BatchProcessor, EventBuilder
from .settings import Settings, load_settings
from .worker import worker_loop

logger = logging.getLogger("indexer")

AUTH_HEADERS = ("authorization", "x-auth", "auth")


def create_app(settings: Optional[Settings] = None, db: Optional[EventStore] = None,
               redis_client: Optional[redis.Redis] = None,
               ledger: Optional[LedgerClient] = None) -> FastAPI:
    """
    Build the service. Collaborators passed in are used as-is and left
    open on shutdown; the ones left as None are created at startup and
    closed on shutdown.
    """
    settings = settings or load_settings()
    classifier = InstructionClassifier(settings.discriminators)

    app = FastAPI(title="Counter Event Indexer")
    app.add_middleware(CORSMiddleware, allow_origins=[settings.cors_origin],
                       allow_methods=["*"], allow_headers=["*"])
    app.state.settings = settings
    app.state.db = db
    app.state.redis = redis_client
    app.state.ledger = ledger
    app.state.start_time = time.time()

    stop_event = asyncio.Event()
    worker_tasks: List[asyncio.Task] = []
    owned: List[Any] = []

    @app.on_event("startup")
    async def startup():
        if app.state.db is None:
            store = EventStore(settings.database_url, command_timeout=settings.store_timeout)
            await store.connect()
            await store.init_schema()
            app.state.db = store
            owned.append(store)
        if app.state.redis is None:
            app.state.redis = redis.from_url(settings.broker_url, decode_responses=False)
            owned.append(app.state.redis)
        if app.state.ledger is None:
            app.state.ledger = LedgerClient(settings.rpc_url, settings.rpc_commitment, settings.ledger_timeout)
            owned.append(app.state.ledger)

        reconciler = StateReconciler(app.state.ledger, settings.program_id, settings.counter_seed)
        builder = EventBuilder(classifier, reconciler, settings.program_id)
        processor = BatchProcessor(builder, app.state.db, settings.program_id, settings.store_timeout)
        app.state.processor = processor

        for i in range(settings.workers):
            t = asyncio.create_task(
                worker_loop(f"w{i+1}", app.state.redis, settings.queue_key, processor, stop_event)
            )
            worker_tasks.append(t)
        logger.info("indexer started program=%s workers=%d", settings.program_id, settings.workers)

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()
        for t in worker_tasks:
            t.cancel()
        for resource in owned:
            if isinstance(resource, redis.Redis):
                await resource.aclose()
            else:
                await resource.close()

    def authorized(request: Request) -> bool:
        if not settings.webhook_auth:
            return True
        for name in AUTH_HEADERS:
            value = request.headers.get(name)
            if value:
                return value == settings.webhook_auth
        return False

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected" if app.state.db is not None else "disconnected",
        }

    @app.post("/webhook/helius")
    async def webhook(request: Request, body: WebhookBody = Body(...)):
        if not authorized(request):
            logger.warning("unauthorized webhook request from %s",
                           request.client.host if request.client else "unknown")
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if app.state.redis is None:
            return JSONResponse({"error": "broker not ready"}, status_code=503)

        await app.state.redis.rpush(settings.queue_key, json.dumps(body).encode("utf-8"))
        logger.info("webhook batch queued records=%d", len(body))
        return {"received": True}

    @app.get("/api/events")
    async def recent_events(limit: int = Query(100, ge=1, le=1000)):
        try:
            events = await app.state.db.query_recent(limit)
        except Exception:
            logger.exception("failed to fetch recent events")
            return JSONResponse({"error": "Failed to fetch events"}, status_code=500)
        return {"events": events}

    @app.get("/api/events/{authority}")
    async def events_by_authority(authority: str, limit: int = Query(100, ge=1, le=1000)):
        try:
            events = await app.state.db.query_by_authority(authority, limit)
        except Exception:
            logger.exception("failed to fetch events authority=%s", authority)
            return JSONResponse({"error": "Failed to fetch events"}, status_code=500)
        return {"events": events}

    @app.get("/api/counter/{authority}")
    async def counter_state(authority: str):
        try:
            count = await app.state.db.latest_state_for(authority)
        except Exception:
            logger.exception("failed to fetch counter state authority=%s", authority)
            return JSONResponse({"error": "Failed to fetch counter state"}, status_code=500)
        if count is None:
            return JSONResponse({"error": "Counter not found"}, status_code=404)
        return {"authority": authority, "count": count}

    @app.get("/api/stats")
    async def stats():
        try:
            data = await app.state.db.stats()
        except Exception:
            logger.exception("failed to fetch stats")
            return JSONResponse({"error": "Failed to fetch statistics"}, status_code=500)
        data["workers"] = settings.workers
        data["uptime_sec"] = int(time.time() - app.state.start_time)
        return data

    return app


_settings = load_settings()
logging.basicConfig(level=_settings.log_level)
app = create_app(_settings)


def run() -> None:
    uvicorn.run(app, host=_settings.host, port=_settings.port, log_level=_settings.log_level.lower())
