"""GitHub webhook endpoint for automatic README regeneration."""

import logging
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..database import get_db
from ..core.config import settings
from ..exceptions import PayloadValidationError, SignatureInvalidError
from ..schemas.webhook import PushEvent, WebhookResponse
from ..services import signature
from ..services.event_filter import EventFilter, IGNORED_EVENT_TYPE
from ..services.job_queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_job_queue(request: Request) -> JobQueue:
    """The queue owned by the application (built at startup)."""
    return request.app.state.job_queue


def get_event_filter(queue: JobQueue = Depends(get_job_queue)) -> EventFilter:
    return EventFilter(queue, settings.get_loop_markers())


@router.post("/github", response_model=WebhookResponse)
async def github_webhook(
    request: Request,
    db: Session = Depends(get_db),
    event_filter: EventFilter = Depends(get_event_filter),
):
    """
    Receive GitHub push webhooks and enqueue README regeneration.

    The signature is checked on the raw body before anything is parsed.
    The response says only whether the push was accepted; why an event was
    ignored is logged, never returned.
    """
    body = await request.body()
    delivery_id = request.headers.get("X-GitHub-Delivery", "")

    if not signature.verify(body, request.headers.get("X-Hub-Signature-256"), settings.github_webhook_secret):
        if not settings.github_webhook_secret:
            logger.warning("GITHUB_WEBHOOK_SECRET not configured, rejecting delivery")
        logger.warning("Webhook signature verification failed", extra={"delivery_id": delivery_id})
        raise SignatureInvalidError()

    event_type = request.headers.get("X-GitHub-Event", "")
    if event_type != "push":
        logger.info("Push ignored", extra={"reason": IGNORED_EVENT_TYPE, "event_type": event_type, "delivery_id": delivery_id})
        return WebhookResponse(status="ignored")

    try:
        event = PushEvent.model_validate_json(body)
    except ValidationError as e:
        raise PayloadValidationError(
            "Malformed push payload",
            details={"errors": e.error_count()},
        ) from e

    decision = event_filter.admit(db, event_type, event)
    return WebhookResponse(status="accepted" if decision.enqueue else "ignored")
