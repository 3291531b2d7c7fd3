"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from typing import List, Optional
import logging

from api.src.config import get_settings
from api.src.models.run import TriggerResponse
from api.src.services.github import (
    verify_signature,
    push_event_to_trigger,
    pull_request_event_to_trigger,
)
from api.src.services.pipelines import enqueue_trigger, get_pipelines, rejected
from api.src.services.queue import RunQueue, get_run_queue
from controller.src.errors import TriggerRejected
from controller.src.models.step import PipelineConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

EVENT_PARSERS = {
    "push": push_event_to_trigger,
    "pull_request": pull_request_event_to_trigger,
}

@router.post("/github")
async def github_webhook(
    request: Request,
    pipelines: List[PipelineConfig] = Depends(get_pipelines),
    queue: RunQueue = Depends(get_run_queue),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256, get_settings().github_webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    parser = EVENT_PARSERS.get(x_github_event)
    if parser is None:
        return {
            "status": "ignored",
            "event": x_github_event,
            "message": f"Event type '{x_github_event}' not handled"
        }

    event = parser(payload)
    if event is None:
        return TriggerResponse(status="skipped", reason="Event does not describe a buildable commit")

    try:
        return await enqueue_trigger(event, pipelines, queue)
    except TriggerRejected as e:
        logger.info(f"Trigger rejected: {e}")
        return rejected(e)
