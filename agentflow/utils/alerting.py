# /agentflow/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime

from agentflow.config.settings import settings

# Posts critical alerts (no usable agents, provider auth failures, ...) to an
# optional operator webhook. Alerting must never break the caller.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.client = client or (httpx.AsyncClient(timeout=5.0) if webhook_url else None)

    async def post(self, payload: Dict[str, Any]) -> bool:
        if not (self.client and self.webhook_url):
            return False
        try:
            response = await self.client.post(self.webhook_url, json=payload)
            return response.status_code < 400
        except Exception as e:
            logger.error(f"Failed to post alert: {e}")
            return False

    async def send_critical_alert(self, error: str, context: Dict[str, Any]) -> bool:
        alert_data = {
            "severity": "critical", "service": settings.service_name,
            "error": error, "context": context, "timestamp": datetime.utcnow().isoformat(),
            "environment": settings.environment,
        }
        logger.critical(f"ALERT: {error}", extra={"context": context})
        return await self.post(alert_data)

    async def cleanup(self):
        if self.client:
            await self.client.aclose()
