# /agentflow/services/whatsapp_service.py

import re
import httpx
import logging
import tenacity
from typing import Any, Dict, Optional, Protocol

from agentflow.config.settings import settings
from agentflow.exceptions import DeliveryError
from agentflow.models.domain import Channel, EndUser
from agentflow.models.messages import ListReply, QuickReply
from agentflow.utils.alerting import AlertingService
from agentflow.utils.circuit_breaker import CircuitBreaker
from agentflow.utils.metrics import delivery_counter
from agentflow.workflows.templates import OutboundPayload

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24
MAX_TEXT_LENGTH = 4096
KARIX_METADATA_VERSION = "v1.0.9"


class MessageDelivery(Protocol):
    provider_name: str

    async def send(self, channel: Channel, end_user: EndUser, payload: OutboundPayload, sender: Optional[str]) -> Optional[str]: ...


def clean_phone(phone: str) -> str:
    return re.sub(r"[^\d]", "", phone or "")


# ==================== Meta (WhatsApp Cloud API) ====================

def to_meta_message(payload: OutboundPayload, to_phone: str) -> Dict[str, Any]:
    """Outbound payload -> Graph API message body."""
    message: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to_phone,
    }
    if isinstance(payload, QuickReply):
        buttons = [
            {
                "type": "reply",
                "reply": {
                    "id": option.postback_text or f"button-{index}",
                    "title": (option.title or "")[:MAX_BUTTON_TITLE],
                },
            }
            for index, option in enumerate(payload.options[:MAX_BUTTONS])
        ]
        message["type"] = "interactive"
        message["interactive"] = {
            "type": "button",
            "body": {"text": payload.content.text[:1024]},
            "action": {"buttons": buttons},
        }
    elif isinstance(payload, ListReply):
        sections = [
            {
                "title": item.title or "",
                "rows": [
                    {
                        "id": option.postback_text or f"section-{i}-row-{j}",
                        "title": (option.title or "")[:MAX_ROW_TITLE],
                    }
                    for j, option in enumerate(item.options)
                ],
            }
            for i, item in enumerate(payload.items)
        ]
        button = payload.global_buttons[0].title if payload.global_buttons else "Select"
        message["type"] = "interactive"
        message["interactive"] = {
            "type": "list",
            "header": {"type": "text", "text": payload.title},
            "body": {"text": payload.body or payload.title},
            "action": {"button": button[:MAX_BUTTON_TITLE], "sections": sections},
        }
    else:
        message["type"] = "text"
        message["text"] = {"preview_url": False, "body": payload.text[:MAX_TEXT_LENGTH]}
    return message


class WhatsAppCloudDelivery:
    provider_name = "meta"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        alerting: Optional[AlertingService] = None,
        base_url: str = settings.whatsapp_graph_url,
    ):
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.alerting = alerting
        self.base_url = base_url.rstrip("/")
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send(self, channel: Channel, end_user: EndUser, payload: OutboundPayload, sender: Optional[str]) -> Optional[str]:
        access_token = channel.config.get("access_token") or settings.whatsapp_access_token
        phone_id = channel.config.get("phone_number_id") or settings.whatsapp_phone_id
        if not (access_token and phone_id):
            delivery_counter.labels(provider=self.provider_name, status="misconfigured").inc()
            raise DeliveryError(self.provider_name, f"Channel {channel.id} has no access token or phone number id")

        to_phone = clean_phone(end_user.phone)
        url = f"{self.base_url}/{phone_id}/messages"
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        response = await self.resilient_api_call(
            self.http_client.post, url, json=to_meta_message(payload, to_phone), headers=headers
        )

        if response.status_code == 200:
            message_id = (response.json().get("messages") or [{}])[0].get("id")
            delivery_counter.labels(provider=self.provider_name, status="sent").inc()
            logger.info(f"WhatsApp message sent to {to_phone} from {sender}, wamid: {message_id}")
            return message_id

        delivery_counter.labels(provider=self.provider_name, status="failed").inc()
        try:
            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
        except ValueError:
            error_message = response.text
        logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
        if response.status_code == 401 and self.alerting:
            await self.alerting.send_critical_alert("WhatsApp authentication failed", {"channel_id": channel.id})
        raise DeliveryError(self.provider_name, error_message, response.status_code)

    async def close(self):
        await self.http_client.aclose()


# ==================== Karix ====================

def to_karix_content(payload: OutboundPayload) -> Dict[str, Any]:
    if isinstance(payload, QuickReply):
        return {
            "preview_url": False,
            "shorten_url": False,
            "type": "INTERACTIVE",
            "interactive": {
                "type": "button",
                "body": {"text": payload.content.text},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": str(i), "title": (option.title or "")[:MAX_BUTTON_TITLE]}}
                        for i, option in enumerate(payload.options[:MAX_BUTTONS])
                    ]
                },
            },
        }
    if isinstance(payload, ListReply):
        button = payload.global_buttons[0].title if payload.global_buttons else "Select"
        return {
            "preview_url": False,
            "shorten_url": False,
            "type": "INTERACTIVE",
            "interactive": {
                "type": "list",
                "header": {"type": "text", "text": payload.title},
                "body": {"text": payload.body or payload.title},
                "action": {
                    "button": button,
                    "sections": [
                        {
                            "title": item.title or "",
                            "rows": [
                                {"id": f"{i}-{j}", "title": (option.title or "")[:MAX_ROW_TITLE]}
                                for j, option in enumerate(item.options)
                            ],
                        }
                        for i, item in enumerate(payload.items)
                    ],
                },
            },
        }
    return {"preview_url": False, "text": payload.text, "type": "TEXT"}


def build_karix_request(payload: OutboundPayload, to_phone: str, sender: str) -> Dict[str, Any]:
    return {
        "message": {
            "channel": "WABA",
            "content": to_karix_content(payload),
            "recipient": {"to": to_phone, "recipient_type": "individual"},
            "sender": {"from": sender},
        },
        "metaData": {"version": KARIX_METADATA_VERSION},
    }


class KarixDelivery:
    provider_name = "karix"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, api_url: str = settings.karix_api_url):
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.api_url = api_url
        self.circuit_breaker = CircuitBreaker("karix")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send(self, channel: Channel, end_user: EndUser, payload: OutboundPayload, sender: Optional[str]) -> Optional[str]:
        api_key = channel.config.get("api_key") or settings.karix_api_key
        sender = sender or channel.sender_number()
        if not (api_key and sender):
            delivery_counter.labels(provider=self.provider_name, status="misconfigured").inc()
            raise DeliveryError(self.provider_name, f"Channel {channel.id} has no api key or sender number")

        to_phone = clean_phone(end_user.phone)
        headers = {"Content-Type": "application/json", "Authentication": f"Bearer {api_key}"}
        response = await self.resilient_api_call(
            self.http_client.post, self.api_url, json=build_karix_request(payload, to_phone, sender), headers=headers
        )
        if response.status_code >= 400:
            delivery_counter.labels(provider=self.provider_name, status="failed").inc()
            logger.error(f"karix_send_failed to {to_phone}: {response.status_code} - {response.text}")
            raise DeliveryError(self.provider_name, response.text, response.status_code)

        delivery_counter.labels(provider=self.provider_name, status="sent").inc()
        try:
            message_id = response.json().get("mid")
        except ValueError:
            message_id = None
        logger.info(f"Karix message sent to {to_phone} from {sender}")
        return message_id

    async def close(self):
        await self.http_client.aclose()


class ProviderRouter:
    """Picks the delivery adapter from the channel's provider name; unknown providers use the default."""

    def __init__(self, adapters: Dict[str, MessageDelivery], default: str = "meta"):
        self.adapters = adapters
        self.default = default

    def adapter_for(self, channel: Channel) -> MessageDelivery:
        provider = (channel.provider_name or self.default).lower()
        adapter = self.adapters.get(provider)
        if adapter is None:
            logger.warning(f"No delivery adapter for provider '{provider}', using {self.default}")
            adapter = self.adapters[self.default]
        return adapter

    async def send(self, channel: Channel, end_user: EndUser, payload: OutboundPayload, sender: Optional[str]) -> Optional[str]:
        return await self.adapter_for(channel).send(channel, end_user, payload, sender)

    def circuits(self) -> Dict[str, Dict]:
        return {
            name: adapter.circuit_breaker.status()
            for name, adapter in self.adapters.items()
            if getattr(adapter, "circuit_breaker", None) is not None
        }

    async def close(self):
        for adapter in self.adapters.values():
            close = getattr(adapter, "close", None)
            if close:
                await close()


def build_provider_router(alerting: Optional[AlertingService] = None) -> ProviderRouter:
    return ProviderRouter({
        "meta": WhatsAppCloudDelivery(alerting=alerting),
        "karix": KarixDelivery(),
    })
