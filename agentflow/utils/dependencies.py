# /agentflow/utils/dependencies.py

import hmac
import hashlib
import secrets
import structlog
from fastapi import Request, HTTPException, status

from agentflow.config.settings import settings
from agentflow.utils.metrics import webhook_signature_counter
from agentflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Meta signs the raw body with the app secret: X-Hub-Signature-256: sha256=<hex>."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    if not settings.whatsapp_app_secret:
        # Unsigned webhooks are only accepted outside production.
        if settings.environment == "production":
            raise HTTPException(status_code=501, detail="Webhook signature verification is not configured.")
        webhook_signature_counter.labels(status="skipped").inc()
        return body

    signature = request.headers.get("x-hub-signature-256", "")
    if not verify_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", signature=signature[:50], client_ip=get_remote_address(request))
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def verify_api_key(request: Request):
    """Operator endpoints require X-API-Key when API_KEY is configured."""
    if settings.api_key:
        provided_key = request.headers.get("X-API-Key")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or missing API key")
    return True


def get_container(request: Request):
    return request.app.state.container
