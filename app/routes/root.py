"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "scopemem",
        "version": "0.1.0",
        "description": "Scoped memory store with hybrid retrieval for AI agents",
        "embedding_model": config.EMBEDDING_MODEL,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "mcp": "/mcp",
        },
    }
