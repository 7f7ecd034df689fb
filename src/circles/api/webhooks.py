"""HubSpot webhook endpoints.

GET echoes HubSpot's verification challenge; POST validates the v3
signature (when a secret is configured) and applies the batch of events to
the local store. Processing failures inside the batch are reported in the
response counts, never as HTTP errors, so HubSpot does not redeliver.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, status

from src.circles.config import Settings, get_settings
from src.circles.webhooks.processor import WebhookEventProcessor
from src.circles.webhooks.signature import verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def _get_processor(request: Request) -> WebhookEventProcessor:
    """Retrieve WebhookEventProcessor from app.state, 503 if not available."""
    processor = getattr(request.app.state, "webhook_processor", None)
    if processor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook processor not initialized",
        )
    return processor


@router.get("/hubspot")
async def verify_hubspot_webhook(challenge: str | None = None) -> dict[str, Any]:
    """Subscription verification: echo the challenge back."""
    return {"status": "ok", "challenge": challenge}


@router.post("/hubspot")
async def receive_hubspot_webhook(request: Request) -> dict[str, Any]:
    settings = _get_settings(request)
    body = await request.body()

    if settings.HUBSPOT_WEBHOOK_SECRET:
        valid = verify_signature(
            settings.HUBSPOT_WEBHOOK_SECRET,
            method=request.method,
            uri=str(request.url),
            body=body,
            signature=request.headers.get("X-HubSpot-Signature-v3"),
            timestamp=request.headers.get("X-HubSpot-Request-Timestamp"),
            max_age_seconds=settings.WEBHOOK_MAX_AGE_SECONDS,
        )
        if not valid:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )

    try:
        events = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid JSON",
        ) from None
    if isinstance(events, dict):
        events = [events]
    if not isinstance(events, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a list of events",
        )

    processor = _get_processor(request)
    result = await processor.process(events)
    return {
        "message": "Webhook processed successfully",
        "events_processed": result.received,
        "processed": result.processed,
        "ignored": result.ignored,
        "errors": result.errors,
    }
