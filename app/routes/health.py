"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os
import time

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

import core.config as config
from core.db import DB, schema_revisions
from core.errors import EmbeddingProviderError


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _check_embedding_health(service, check_external: bool) -> dict:
    if service is None:
        return {"status": "unknown", "checked": False, "error": "service_not_initialized"}

    provider = service.pipeline.provider
    embedding_status = {
        "status": "unknown",
        "checked": False,
        **provider.status(),
    }

    if not provider.available:
        embedding_status["status"] = "disabled"
        return embedding_status

    if embedding_status.get("circuit_breaker", {}).get("open"):
        embedding_status["status"] = "cooldown"
        return embedding_status

    if check_external:
        embedding_status["checked"] = True
        start = time.time()
        try:
            provider.embed("healthcheck")
            embedding_status["status"] = "ok"
            embedding_status["latency_ms"] = int((time.time() - start) * 1000)
        except EmbeddingProviderError as exc:
            embedding_status["status"] = "error"
            embedding_status["error"] = str(exc)
        return embedding_status

    embedding_status["status"] = "ready"
    return embedding_status


def _service(request: Request):
    return getattr(request.app.state, "memory_service", None)


def _require_db(db_health: dict, **detail) -> None:
    vector_required = config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"
    if not db_health.get("ok") or (vector_required and not db_health.get("pgvector_installed")):
        raise HTTPException(status_code=503, detail={"database": db_health, **detail})


@router.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    service = _service(request)
    db_health = _check_db_health()
    embedding_status = _check_embedding_health(service, check_external=False)
    _require_db(db_health, embedding_provider=embedding_status)

    return {
        "status": "healthy",
        "service": "scopemem",
        "version": "0.1.0",
        "instance_id": os.environ.get("SCOPEMEM_INSTANCE_ID", "scopemem-1"),
        "database": db_health,
        "capabilities": service.capabilities if service else None,
        "embedding_provider": embedding_status,
    }


@router.get("/health/deps")
async def health_deps(request: Request):
    """Dependency health checks (probes the embedding provider and job queue)."""
    service = _service(request)
    db_health = _check_db_health()
    _require_db(db_health)

    embedding_status = _check_embedding_health(service, check_external=True)
    jobs = service.pipeline.dispatcher.stats() if service else None

    return {
        "status": "healthy",
        "service": "scopemem",
        "database": db_health,
        "embedding_provider": embedding_status,
        "embedding_jobs": jobs,
    }
