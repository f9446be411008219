# /agentflow/services/provider_adapters.py

import logging
from typing import Any, Dict, List, Optional, TypedDict

from agentflow.models.messages import DeliveryStatus, InboundMessage, Participant

# Provider webhook bodies -> InboundMessage / DeliveryStatus.

logger = logging.getLogger(__name__)

UNSUPPORTED_TEXT = "Unsupported message type"


class NormalizedWebhook(TypedDict):
    messages: List[InboundMessage]
    statuses: List[DeliveryStatus]


# ==================== Meta ====================

def _meta_text(msg: Dict[str, Any]):
    """Returns (text, postback, attachments) for one Meta message."""
    kind = msg.get("type")
    if kind == "text":
        return (msg.get("text") or {}).get("body") or "", None, []
    if kind == "image":
        image = msg.get("image") or {}
        return image.get("caption") or "Image received", None, [image]
    if kind == "sticker":
        return "Sticker received", None, [msg.get("sticker") or {}]
    if kind == "location":
        return "Location shared", None, [msg.get("location") or {}]
    if kind == "reaction":
        reaction = msg.get("reaction") or {}
        return f"Reacted with {reaction.get('emoji')}", None, [reaction]
    if kind == "contacts":
        return "Contact shared", None, list(msg.get("contacts") or [])
    if kind == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get(interactive.get("type") or "") or {}
        if interactive.get("type") in ("button_reply", "list_reply"):
            return reply.get("title") or "", reply.get("id"), []
        return "Interactive response received", None, []
    if kind == "button":
        # Template quick-reply buttons.
        button = msg.get("button") or {}
        return button.get("text") or "", button.get("payload"), []
    if kind == "order":
        return "Order placed", None, [msg.get("order") or {}]
    if kind == "system":
        system = msg.get("system") or {}
        return system.get("body") or "System message", None, [system]
    return UNSUPPORTED_TEXT, None, []


def normalize_meta_webhook(body: Dict[str, Any]) -> NormalizedWebhook:
    """Read entry[0].changes[0].value of a WhatsApp Cloud webhook."""
    result: NormalizedWebhook = {"messages": [], "statuses": []}
    try:
        value = body["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Meta webhook without entry/changes/value, ignoring")
        return result

    metadata = value.get("metadata") or {}
    business_phone = metadata.get("display_phone_number")

    for status in value.get("statuses") or []:
        result["statuses"].append(DeliveryStatus(
            service="meta",
            message_id=status.get("id"),
            status=status.get("status") or "unknown",
            recipient=status.get("recipient_id"),
            timestamp=status.get("timestamp"),
            errors=status.get("errors") or [],
            raw=status,
        ))

    contacts = value.get("contacts") or [{}]
    sender_name = ((contacts[0] or {}).get("profile") or {}).get("name") or ""
    for msg in value.get("messages") or []:
        text, postback, attachments = _meta_text(msg)
        result["messages"].append(InboundMessage(
            type=msg.get("type") or "text",
            text=text,
            postback=postback,
            attachments=attachments,
            message_id=msg.get("id"),
            sender=Participant(phone=msg.get("from"), name=sender_name),
            receiver=Participant(phone=business_phone),
            service="meta",
            webhook_context={
                "provider": "meta",
                "phone_number_id": metadata.get("phone_number_id"),
                "timestamp": msg.get("timestamp"),
                "context": msg.get("context"),
            },
        ))
    return result


# ==================== Karix ====================

def _karix_message(msg: Dict[str, Any]):
    content_type = msg.get("contentType")
    if content_type == "text":
        return (msg.get("text") or {}).get("body") or "", None, []
    if content_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("list_reply") or interactive.get("button_reply") or {}
        return reply.get("title") or "", reply.get("id"), []
    if content_type == "ATTACHMENT":
        attachment = {
            "type": msg.get("attachmentType"),
            "url": msg.get("attachmentUrl"),
            "mime_type": msg.get("attachmentMimeType"),
            "filename": msg.get("attachmentFilename"),
        }
        return msg.get("attachmentType") or "attachment received", None, [attachment]
    return UNSUPPORTED_TEXT, None, []


def normalize_karix_webhook(body: Dict[str, Any], business_id: Optional[str] = None) -> NormalizedWebhook:
    result: NormalizedWebhook = {"messages": [], "statuses": []}
    events = body.get("events") or {}
    event_type = events.get("eventType")

    if event_type == "DELIVERY EVENTS":
        attributes = body.get("notificationAttributes") or {}
        result["statuses"].append(DeliveryStatus(
            service="karix",
            message_id=events.get("mid"),
            status=attributes.get("status") or "unknown",
            recipient=(body.get("recipient") or {}).get("to"),
            timestamp=events.get("timestamp"),
            errors=[{"code": attributes.get("code"), "reason": attributes.get("reason")}] if attributes.get("code") else [],
            raw=body,
        ))
        return result

    if event_type == "User initiated":
        msg = (body.get("eventContent") or {}).get("message") or {}
        text, postback, attachments = _karix_message(msg)
        result["messages"].append(InboundMessage(
            type=msg.get("contentType") or "text",
            text=text,
            postback=postback,
            attachments=attachments,
            message_id=events.get("mid"),
            sender=Participant(phone=msg.get("from")),
            receiver=Participant(phone=msg.get("to")),
            service="karix",
            webhook_context={"provider": "karix", "business_id": business_id},
        ))
        return result

    logger.info(f"Ignoring Karix event type: {event_type}")
    return result
