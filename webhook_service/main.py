"""
Webhook Service
Receives signed provider webhooks and applies them to the ledger.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from common.error_handling import add_error_handlers
from common.redis_client import RedisClient
from common.schemas import Provider, WebhookAck, WebhookEventOut, WebhookStatus
from common.settings import Settings, settings as default_settings
from common.tracing import tracing_middleware, webhook_tracer
from ledger_service.db import build_session_factory, get_engine, init_db
from ledger_service.service import LedgerService
from webhook_service.event_store import WebhookEventStore
from webhook_service.handlers import build_dispatcher
from webhook_service.idempotency import build_idempotency_store
from webhook_service.pipeline import WebhookPipeline

logger = logging.getLogger(__name__)


def wire(app: FastAPI, engine: Engine, settings: Settings, redis_client: Optional[RedisClient] = None):
    init_db(engine)
    session_factory = build_session_factory(engine)
    ledger = LedgerService(session_factory, settings.allow_description_reference_match)
    app.state.ledger = ledger
    app.state.events = WebhookEventStore(session_factory)
    app.state.pipeline = WebhookPipeline(
        session_factory,
        build_dispatcher(ledger),
        build_idempotency_store(settings, session_factory, redis_client),
        app.state.events,
        settings,
    )


def get_pipeline(request: Request) -> WebhookPipeline:
    return request.app.state.pipeline


def get_events(request: Request) -> WebhookEventStore:
    return request.app.state.events


def create_app(
    engine: Optional[Engine] = None,
    settings: Settings = default_settings,
    redis_client: Optional[RedisClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not hasattr(app.state, "pipeline"):
            wire(app, get_engine(), settings, redis_client)
            logger.info("🚀 Webhook service started")
        yield

    app = FastAPI(title="Webhook Service", version="1.0.0", lifespan=lifespan)
    if engine is not None:
        wire(app, engine, settings, redis_client)
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, webhook_tracer)

    async def _receive(provider: Provider, request: Request, pipeline: WebhookPipeline) -> WebhookAck:
        raw_body = await request.body()
        return await run_in_threadpool(pipeline.handle, provider.value, raw_body, request.headers)

    @app.post("/webhooks/stripe", response_model=WebhookAck)
    async def stripe_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
        return await _receive(Provider.STRIPE, request, pipeline)

    @app.post("/webhooks/paystack", response_model=WebhookAck)
    async def paystack_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
        return await _receive(Provider.PAYSTACK, request, pipeline)

    @app.post("/webhooks/flutterwave", response_model=WebhookAck)
    async def flutterwave_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
        return await _receive(Provider.FLUTTERWAVE, request, pipeline)

    @app.get("/webhooks/events", response_model=List[WebhookEventOut])
    async def list_events(
        status: Optional[WebhookStatus] = None,
        provider: Optional[Provider] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        events: WebhookEventStore = Depends(get_events),
    ):
        return await run_in_threadpool(
            events.list,
            status.value if status else None,
            provider.value if provider else None,
            limit,
            offset,
        )

    @app.post("/webhooks/events/{event_id}/retry", response_model=WebhookEventOut)
    async def retry_event(event_id: str, pipeline: WebhookPipeline = Depends(get_pipeline)):
        return await run_in_threadpool(pipeline.retry, event_id)

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "webhook"}

    return app


logging.basicConfig(level=default_settings.log_level)
app = create_app()
