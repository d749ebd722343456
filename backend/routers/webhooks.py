"""GitHub webhook receiver."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError

from backend.routers.projects import _http_error
from backend.scheduling.errors import SchedulingError

logger = logging.getLogger("projectflow.webhooks")

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _get_webhook_router(request: Request):
    router = getattr(request.app.state, "webhook_router", None)
    if not router:
        raise HTTPException(status_code=503, detail="Webhook router not initialized")
    return router


@webhooks_router.post("/github")
async def receive_github_event(
    request: Request,
    x_github_event: str = Header("", alias="X-GitHub-Event"),
    x_github_delivery: str = Header("", alias="X-GitHub-Delivery"),
):
    """Route one delivery. Signature verification happens upstream of this service."""
    webhook_router = _get_webhook_router(request)
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    logger.info("Received webhook %s (delivery %s)", x_github_event or "?", x_github_delivery or "?")
    try:
        outcome = await webhook_router.handle(x_github_event, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Malformed {x_github_event} payload") from exc
    except SchedulingError as exc:
        logger.error("Failed to process %s delivery %s: %s", x_github_event, x_github_delivery, exc)
        raise _http_error(exc) from exc
    return {"received": True, **outcome.model_dump(mode="json")}
