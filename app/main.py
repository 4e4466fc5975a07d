"""
Standalone FastAPI app wiring for the scoped memory service.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, dispose_db, init_db
from core.mcp import bind_service, mcp_stream_app, MCPRouteNormalizerASGI
from core.services.memory_service import MemoryService, build_memory_service
from app.routes.health import router as health_router
from app.routes.root import router as root_router


embedding_worker_task = None
embedding_backfill_task = None


async def _embedding_worker_loop(service: MemoryService) -> None:
    """Drain the durable job queue; idle between polls when it is empty."""
    dispatcher = service.pipeline.dispatcher
    while True:
        handled = 0
        try:
            handled = await asyncio.to_thread(dispatcher.run_pending)
        except Exception as exc:
            config.logger.warning(f"Embedding worker error: {exc}")
        if not handled:
            await asyncio.sleep(config.EMBEDDING_WORKER_POLL_SECONDS)


async def _cancel(task) -> None:
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global embedding_worker_task, embedding_backfill_task
    init_db()
    service = build_memory_service(DB.engine, DB.SessionLocal)
    app.state.memory_service = service
    bind_service(service)
    config.logger.info("memory_service_ready", extra=service.capabilities)

    if service.pipeline.dispatcher.durable:
        embedding_worker_task = asyncio.create_task(_embedding_worker_loop(service))
    if config.EMBEDDING_BACKFILL_ENABLED and service.pipeline.enabled:
        await asyncio.to_thread(service.pipeline.backfill)
        if config.EMBEDDING_BACKFILL_INTERVAL_SECONDS > 0:
            embedding_backfill_task = asyncio.create_task(service.pipeline.run_backfill_loop())
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        await _cancel(embedding_backfill_task)
        await _cancel(embedding_worker_task)
        service.shutdown()
        bind_service(None)
        dispose_db()


app = FastAPI(title="Scoped Memory", redirect_slashes=False, lifespan=lifespan)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(asgi_app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
