"""FastAPI application factory.

Creates the app with request logging, the health/status routes and the
HubSpot webhook receiver. The lifespan builds the sync stack on Redis-backed
storage, loads persisted state and starts the drain and reconciliation
timers; tests pass a prebuilt engine and processor instead.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from src.circles.api import health, webhooks
from src.circles.api.middleware import LoggingMiddleware
from src.circles.config import Settings, get_settings
from src.circles.contacts.store import LocalContactStore
from src.circles.core.logging import configure_structlog
from src.circles.core.storage import RedisKeyValueStore
from src.circles.crm.registry import ConnectionRegistry
from src.circles.sync.engine import SyncEngine
from src.circles.sync.queue import OfflineQueue
from src.circles.webhooks.processor import WebhookEventProcessor

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build and start the sync stack unless one was injected."""
    settings: Settings = app.state.settings
    configure_structlog(settings)

    if app.state.sync_engine is not None:
        yield
        return

    storage = RedisKeyValueStore.from_settings()
    store = LocalContactStore(storage)
    queue = OfflineQueue(storage, max_retries=settings.SYNC_MAX_RETRIES)
    connections = ConnectionRegistry(storage)
    engine = SyncEngine(store, queue, connections, storage)

    await engine.load()
    engine.start()
    app.state.sync_engine = engine
    app.state.webhook_processor = WebhookEventProcessor(store, connections)
    logger.info("app.sync_stack_started", contacts=len(store.contacts()), queued=len(queue))

    try:
        yield
    finally:
        await engine.stop()
        await connections.aclose()
        await storage.close()
        logger.info("app.sync_stack_stopped")


def create_app(
    settings: Settings | None = None,
    *,
    engine: SyncEngine | None = None,
    processor: WebhookEventProcessor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Circles Sync API",
        version="0.1.0",
        description="Offline-first contact sync with HubSpot, Salesforce, Pipedrive and webhooks",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sync_engine = engine
    app.state.webhook_processor = processor

    app.add_middleware(LoggingMiddleware)

    app.include_router(health.router)
    app.include_router(webhooks.router)

    return app


# Module-level app for uvicorn
app = create_app()
