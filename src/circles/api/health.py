"""Health and sync status endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from src.circles.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Liveness check. No external dependencies are touched."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/sync/status")
async def sync_status(request: Request) -> dict[str, Any]:
    """Queue counts and the time of the last drain that pushed anything."""
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        return {"status": "unavailable"}
    return {
        "status": "ok",
        "is_processing": engine.is_processing,
        "last_drain_at": engine.last_drain_at.isoformat() if engine.last_drain_at else None,
        "queue": engine.queue_status().model_dump(),
    }
