# /agentflow/routes/conversations.py
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging

from agentflow.config.settings import settings
from agentflow.exceptions import ConversationNotFoundError
from agentflow.models.api import APIResponse, CloseConversationRequest, ResetConversationRequest, StartBroadcastRequest
from agentflow.services.event_tracker import generate_conversation_analytics, generate_recommendations
from agentflow.utils.dependencies import get_container, verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["Conversations"],
    dependencies=[Depends(verify_api_key)]
)


def _filters(**values) -> dict:
    return {k: v for k, v in values.items() if v is not None}


@router.get("/analytics", response_model=APIResponse)
async def get_conversation_analytics(
    request: Request,
    agent_id: Optional[str] = Query(None),
    channel_id: Optional[str] = Query(None),
    broadcast_id: Optional[str] = Query(None),
    business_id: Optional[str] = Query(None),
):
    """Aggregate analytics report with improvement recommendations."""
    container = get_container(request)
    report = await generate_conversation_analytics(
        container.repository,
        _filters(agent_id=agent_id, channel_id=channel_id, broadcast_id=broadcast_id, business_id=business_id),
    )
    report["recommendations"] = generate_recommendations(report)
    return APIResponse(success=True, message="Analytics generated", data=report, version=settings.api_version)


@router.get("/export", response_model=APIResponse)
async def export_conversations(
    request: Request,
    agent_id: Optional[str] = Query(None),
    channel_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="Filter by conversation status"),
    include_analytics: bool = Query(True),
):
    container = get_container(request)
    rows = await container.conversations.export_conversation_data(
        _filters(agent_id=agent_id, channel_id=channel_id, status=status), include_analytics
    )
    return APIResponse(
        success=True,
        message=f"Exported {len(rows)} conversations",
        data={"conversations": rows},
        version=settings.api_version,
    )


@router.get("/{conversation_id}", response_model=APIResponse)
async def get_conversation_summary(conversation_id: str, request: Request):
    container = get_container(request)
    try:
        summary = await container.conversations.get_conversation_summary(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return APIResponse(success=True, message="Conversation retrieved", data=summary, version=settings.api_version)


@router.post("/{conversation_id}/reset", response_model=APIResponse)
async def reset_conversation(conversation_id: str, body: ResetConversationRequest, request: Request):
    container = get_container(request)
    try:
        conversation = await container.conversations.reset_conversation_to_step(
            conversation_id, body.step, body.clear_variables, body.reason
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return APIResponse(
        success=True,
        message=f"Conversation reset to {conversation.current_step}",
        data={"conversation_id": conversation.id, "current_step": conversation.current_step, "status": conversation.status.value},
        version=settings.api_version,
    )


@router.post("/{conversation_id}/close", response_model=APIResponse)
async def close_conversation(conversation_id: str, body: CloseConversationRequest, request: Request):
    container = get_container(request)
    try:
        conversation = await container.conversations.close_conversation(conversation_id, body.reason, body.details)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return APIResponse(
        success=True,
        message="Conversation closed",
        data={"conversation_id": conversation.id, "status": conversation.status.value},
        version=settings.api_version,
    )


@router.post("/broadcasts/{broadcast_id}/start", response_model=APIResponse)
async def start_broadcast_conversation(broadcast_id: str, body: StartBroadcastRequest, request: Request):
    """Open the broadcast-linked conversation and send the opening message."""
    container = get_container(request)
    try:
        conversation, payload = await container.conversations.start_broadcast_conversation(
            body.end_user_id, body.channel_id, broadcast_id, body.business_id
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    channel = await container.repository.get_channel(body.channel_id)
    end_user = await container.repository.get_end_user(body.end_user_id)
    message_id = None
    if channel and end_user:
        try:
            message_id = await container.delivery.send(channel, end_user, payload, channel.sender_number())
        except Exception as e:
            logger.error(f"Failed to send broadcast opening message for conversation {conversation.id}: {e}")
    return APIResponse(
        success=True,
        message="Broadcast conversation started",
        data={"conversation_id": conversation.id, "message_id": message_id, "payload": payload.model_dump(by_alias=True)},
        version=settings.api_version,
    )
