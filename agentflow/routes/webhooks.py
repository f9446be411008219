# /agentflow/routes/webhooks.py

import json
import structlog
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from agentflow.config.settings import settings
from agentflow.services.provider_adapters import NormalizedWebhook, normalize_karix_webhook, normalize_meta_webhook
from agentflow.utils.dependencies import get_container, verify_webhook_signature
from agentflow.utils.rate_limiter import limiter
from agentflow.utils.request_utils import get_remote_address

# Provider webhook endpoints. Bodies are normalized here and handed to the
# pipeline after the provider has been acknowledged.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


async def _dispatch(request: Request, webhook: NormalizedWebhook) -> dict:
    container = get_container(request)
    source = get_remote_address(request)
    counts = {"messages": len(webhook["messages"]), "statuses": len(webhook["statuses"])}
    if settings.webhook_inline_processing:
        outcome = await container.pipeline.process_webhook(webhook, source)
        return {"status": "processed", **counts, "results": [r["code"].value for r in outcome["messages"]]}
    container.spawn(container.pipeline.process_webhook(webhook, source))
    return {"status": "accepted", **counts}


# --- WhatsApp Cloud (Meta) ---

@router.get("/meta")
async def verify_meta_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/meta")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_meta_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    try:
        data = json.loads(verified_body.decode())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    log.debug("Webhook payload", data=data)

    webhook = normalize_meta_webhook(data)
    log.info("Meta webhook received.", messages=len(webhook["messages"]), statuses=len(webhook["statuses"]))
    return JSONResponse(await _dispatch(request, webhook))


# --- Karix ---

@router.post("/karix")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_karix_webhook(
    request: Request,
    business_id: Optional[str] = Query(None, description="Business the Karix account belongs to")
):
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    webhook = normalize_karix_webhook(data, business_id)
    log.info("Karix webhook received.", messages=len(webhook["messages"]), statuses=len(webhook["statuses"]))
    return JSONResponse(await _dispatch(request, webhook))
