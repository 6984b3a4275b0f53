"""
FastAPI Application — Provider webhooks + operator API.

Provides:
- Webhook endpoints for Evolution and UazAPI (always answer 200)
- Conversation loop (maturation) start / stop / status
- Contact actions: trigger a workflow, apply a tag, mark read, refresh profile
- Session pause / resume
- Health and stats

Background tasks started in the lifespan: flow-step consumer, delayed-job
promoter, delay sweep and stuck-session reaper.
"""
from __future__ import annotations

from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from config.settings import get_settings
from models.schemas import utcnow
from channels.media import MediaService
from channels.registry import build_gateway_registry
from core.engine import FlowSessionEngine, StuckSessionReaper
from core.ingestion import WebhookIngestor
from core.maturation import (
    AlertSink, ConversationLoopScheduler, LoopStartError, MaturationMessenger,
)
from database.blob_store import FileBlobStore
from database.session import close_db, init_db
from database.store_factory import create_store
from job_queue.consumer import DelayedJobPromoter, FlowStepConsumer
from job_queue.delay_scheduler import DelayScheduler
from job_queue.message_queue import Queues, create_message_queue
from rules.engine import TriggerDispatcher

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()

store = create_store({"store_backend": settings.database.store_backend})
message_queue = create_message_queue({
    "backend": settings.queue.backend,
    "redis_url": settings.queue.redis_url,
    "retry_backoff_base": settings.queue.retry_backoff_base,
})
gateways = build_gateway_registry(store, settings.gateway)
blobs = FileBlobStore(settings.storage.blob_dir, settings.storage.public_base_url)
media_service = MediaService(gateways, store, blobs)

dispatcher = TriggerDispatcher(store, message_queue)
delay_scheduler = DelayScheduler(store, settings.flow)
engine = FlowSessionEngine(store, gateways, delay_scheduler, dispatcher, settings.flow)
delay_scheduler.bind(engine.advance)

ingestor = WebhookIngestor(
    store, gateways, message_queue,
    media=media_service,
    webhook_url=settings.gateway.webhook_url,
    webhook_events=settings.gateway.webhook_events,
    stale_lock_seconds=settings.flow.stale_lock_seconds,
)

alerts = AlertSink(settings.maturation.max_alerts)
loop_scheduler = ConversationLoopScheduler(
    store, gateways,
    MaturationMessenger(store, gateways, settings.timezone),
    alerts=alerts,
    config=settings.maturation,
)

flow_consumer = FlowStepConsumer(
    engine, message_queue,
    consumer_group=settings.queue.consumer_group,
    concurrency=settings.queue.consumer_concurrency,
)
delayed_promoter = DelayedJobPromoter(
    message_queue,
    interval_seconds=settings.queue.delayed_promote_interval,
)
reaper = StuckSessionReaper(store, settings.flow)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)

    await message_queue.connect()
    await flow_consumer.start_background()
    await delayed_promoter.start_background()
    await delay_scheduler.start_background()
    await reaper.start_background()

    logger.info("converse_flows_started",
                store_backend=settings.database.store_backend,
                queue_backend=type(message_queue).__name__,
                providers=[p.value for p in gateways.get_available()])
    yield

    await loop_scheduler.stop_all()
    await reaper.stop()
    await delay_scheduler.stop()
    await delayed_promoter.stop()
    await flow_consumer.stop()
    await ingestor.shutdown()
    await message_queue.close()
    await gateways.shutdown_all()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("converse_flows_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ConverseFlows API",
    description="Conversational automation engine for WhatsApp gateways",
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

if settings.storage.public_base_url.startswith("/"):
    app.mount(settings.storage.public_base_url,
              StaticFiles(directory=settings.storage.blob_dir, check_dir=False),
              name="media")


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TriggerWorkflowRequest(BaseModel):
    workflow_id: Optional[str] = None


class ApplyTagRequest(BaseModel):
    tag: str


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "gateways": await gateways.health_check_all(),
        "running_loops": len(loop_scheduler.status()),
    }


@app.get("/api/v1/stats")
async def get_stats():
    stats: dict[str, Any] = await store.stats()
    stats["queue"] = {
        "flow_steps": await message_queue.queue_length(Queues.FLOW_STEPS),
        "delayed": await message_queue.queue_length(Queues.DELAYED),
        "dlq": await message_queue.queue_length(Queues.DLQ),
    }
    stats["running_loops"] = len(loop_scheduler.status())
    return stats


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════

async def _ingest(request: Request, provider: str, event: Optional[str] = None) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook_invalid_json", provider=provider, webhook_event=event)
        return {"status": "ok", "ignored": 1}
    result = await ingestor.ingest(payload, path_event=event, provider=provider)
    return {"status": "ok", **result.to_dict()}


@app.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request):
    return await _ingest(request, provider)


@app.post("/webhooks/{provider}/{event}")
async def provider_webhook_event(provider: str, event: str, request: Request):
    return await _ingest(request, provider, event)


# ══════════════════════════════════════════════════════════════
#  CONVERSATION LOOPS (MATURATION)
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/conversation-loops")
async def list_conversation_loops():
    return {"running": loop_scheduler.status(), "alerts": alerts.recent()}


@app.post("/api/v1/conversation-loops/{conversation_id}/start")
async def start_conversation_loop(conversation_id: str):
    try:
        started = await loop_scheduler.start(conversation_id)
    except LoopStartError as e:
        raise HTTPException(400, str(e))
    return {"conversation_id": conversation_id, "started": started, "running": True}


@app.post("/api/v1/conversation-loops/{conversation_id}/stop")
async def stop_conversation_loop(conversation_id: str):
    stopped = loop_scheduler.stop(conversation_id)
    return {"conversation_id": conversation_id, "stopped": stopped, "running": False}


# ══════════════════════════════════════════════════════════════
#  CONTACTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/contacts/{contact_id}/trigger")
async def trigger_contact_workflow(contact_id: str, req: TriggerWorkflowRequest):
    result = await dispatcher.trigger_workflow(contact_id, req.workflow_id)
    if result.skipped_reason == "contact_not_found":
        raise HTTPException(404, "Contact not found")
    return result.to_dict()


@app.post("/api/v1/contacts/{contact_id}/tags")
async def apply_contact_tag(contact_id: str, req: ApplyTagRequest):
    if not req.tag.strip():
        raise HTTPException(400, "Tag is required")
    result = await dispatcher.apply_tag(contact_id, req.tag)
    if result.skipped_reason == "contact_not_found":
        raise HTTPException(404, "Contact not found")
    return result.to_dict()


@app.post("/api/v1/contacts/{contact_id}/read")
async def mark_contact_read(contact_id: str):
    result = await ingestor.mark_read(contact_id)
    if result.error == "contact_not_found":
        raise HTTPException(404, "Contact not found")
    return result.to_dict()


@app.post("/api/v1/contacts/{contact_id}/profile")
async def refresh_contact_profile(contact_id: str):
    contact = await ingestor.refresh_profile(contact_id)
    if contact is None:
        raise HTTPException(404, "Contact not found")
    return contact.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/sessions/{session_id}/pause")
async def pause_session(session_id: str):
    if not await engine.pause_session(session_id):
        raise HTTPException(409, "Session is not active")
    return {"session_id": session_id, "status": "paused"}


@app.post("/api/v1/sessions/{session_id}/resume")
async def resume_session(session_id: str):
    if not await engine.resume_session(session_id):
        raise HTTPException(409, "Session is not paused")
    return {"session_id": session_id, "status": "active"}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
