"""FastAPI application entry point — wires the engine together.

Usage:
    python -m evidence_engine.main

Serves a health check exposing queue metrics. Ingestion is driven through
EvidenceService by the embedding application.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from evidence_engine.config import settings
from evidence_engine.db.engine import db_lifespan
from evidence_engine.events import start_event_system, stop_event_system, subscribe
from evidence_engine.evidence.service import EvidenceService, build_evidence_service
from evidence_engine.observability import configure_logging, log_event
from evidence_engine.queue.handlers import register_default_handlers
from evidence_engine.queue.service import ProcessingQueue, processing_queue
from evidence_engine.storage.blobs import LocalBlobStore, blob_store
from evidence_engine.storage.optimizer import storage_optimizer
from evidence_engine.storage.retention import check_storage_utilization

configure_logging()

logger = logging.getLogger(__name__)

# Set during lifespan; None outside a running app
evidence_service: EvidenceService | None = None


async def _storage_monitor(store: LocalBlobStore, queue: ProcessingQueue, interval: float) -> None:
    """Check utilization every interval seconds until cancelled."""
    while True:
        try:
            await check_storage_utilization(store, queue)
        except Exception:
            logger.exception("Storage utilization check failed")
        await asyncio.sleep(interval)


# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    global evidence_service
    logger.info("Starting evidence engine (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system + structured event log
        await start_event_system()
        subscribe(log_event)
        logger.info("Event system started")

        # 3. Services and queue handlers
        evidence_service = build_evidence_service(queue=processing_queue)
        register_default_handlers(processing_queue, evidence_service, storage_optimizer, blob_store)
        await processing_queue.start()

        # 4. Storage monitor
        monitor = asyncio.create_task(
            _storage_monitor(blob_store, processing_queue, settings.storage.storage_monitor_interval),
            name="storage-monitor",
        )

        try:
            yield
        finally:
            logger.info("Shutting down evidence engine...")

            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor

            await processing_queue.shutdown()
            logger.info("Processing queue stopped")

            await stop_event_system()
            logger.info("Event system stopped")
            evidence_service = None

    logger.info("Evidence engine shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Evidence Engine",
    description="Evidence ingestion, extraction and processing queue",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint with queue metrics."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "queue": processing_queue.get_metrics().model_dump(),
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "evidence_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
