# /agentflow/services/conversation_service.py

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from agentflow.config import strings
from agentflow.config.settings import settings
from agentflow.exceptions import ConversationConflictError, ConversationNotFoundError
from agentflow.models.conversation import Conversation, ConversationState, ConversationStatus
from agentflow.models.domain import Broadcast
from agentflow.models.flow import ENTRY_STEP, AgentFlowDefinition
from agentflow.models.messages import TextReply
from agentflow.services.event_tracker import EventTracker, EventType
from agentflow.workflows.flow_validator import FlowValidationReport, validate_flow_definition
from agentflow.workflows.templates import OutboundPayload, build_broadcast_reply_options

# Operator-side conversation utilities: summaries, resets, closing, export,
# broadcast conversation bootstrap and flow definition lookups.

logger = logging.getLogger(__name__)


def broadcast_default_reply(broadcast: Broadcast) -> TextReply:
    """The broadcast's configured default message, or the generic thank-you."""
    default = broadcast.default_message
    if default and default.content:
        return TextReply(text=default.content)
    return TextReply(text=strings.BROADCAST_DEFAULT_REPLY)


class ConversationService:
    def __init__(self, repository, tracker: Optional[EventTracker] = None):
        self.repository = repository
        self.tracker = tracker

    async def _require(self, conversation_id: str) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def get_conversation_summary(self, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._require(conversation_id)
        end_user = await self.repository.get_end_user(conversation.end_user_id)
        agent = await self.repository.get_agent(conversation.agent_id) if conversation.agent_id else None
        channel = await self.repository.get_channel(conversation.channel_id)
        broadcast = await self.repository.find_broadcast(conversation.broadcast_id) if conversation.broadcast_id else None
        analytics = conversation.state.analytics

        return {
            "id": conversation.id,
            "status": conversation.status.value,
            "current_step": conversation.current_step,
            "created_at": conversation.created_at,
            "updated_at": conversation.updated_at,
            "user": {
                "id": conversation.end_user_id,
                "phone": end_user.phone if end_user else None,
                "name": end_user.name if end_user else None,
            },
            "agent": {"id": conversation.agent_id, "name": agent.name if agent else None},
            "channel": {"id": conversation.channel_id, "provider": channel.provider_name if channel else None},
            "broadcast": {"id": broadcast.id, "name": broadcast.name} if broadcast else None,
            "progress": {
                "captured_variables": conversation.state.captured_variables,
                "repeat_count": conversation.state.repeat_count,
                "needs_attention": conversation.state.repeat_count >= settings.flow.max_errors_before_escalation,
                "total_events": analytics.total_events,
                "last_event_at": analytics.last_event_at,
                "completion_rate": analytics.completion_rate,
            },
            "analytics": {
                "events": [e.model_dump() for e in analytics.events],
                "step_counts": analytics.step_counts,
                "average_response_time": analytics.average_response_time,
            },
        }

    async def reset_conversation_to_step(
        self,
        conversation_id: str,
        step: str = ENTRY_STEP,
        clear_variables: bool = False,
        reason: str = "manual_reset",
    ) -> Conversation:
        await self._require(conversation_id)
        state: Dict[str, Any] = {
            "repeat_count": 0,
            "pending_confirmation": None,
            "restart_offered": False,
            "last_reset_at": datetime.utcnow(),
            "last_reset_reason": reason,
        }
        if clear_variables:
            state["captured_variables"] = {}
        conversation = await self.repository.patch_conversation(
            conversation_id,
            {"current_step": step, "status": ConversationStatus.ACTIVE, "completed_at": None, "state": state},
        )
        logger.info(f"Reset conversation {conversation_id} to step {step} (reason={reason}, clear_variables={clear_variables})")
        return conversation

    async def close_conversation(
        self,
        conversation_id: str,
        reason: str = "completed",
        extra: Optional[Dict[str, Any]] = None,
    ) -> Conversation:
        now = datetime.utcnow()
        conversation = await self.repository.patch_conversation(
            conversation_id,
            {
                "status": ConversationStatus.COMPLETED,
                "completed_at": now,
                "state": {"completion_reason": reason, "close_details": {"closed_at": now.isoformat(), **(extra or {})}},
            },
        )
        logger.info(f"Conversation {conversation_id} closed with reason: {reason}")
        return conversation

    async def export_conversation_data(
        self, filters: Optional[Dict[str, Any]] = None, include_analytics: bool = True
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for conversation in await self.repository.list_conversations(filters or {}):
            end_user = await self.repository.get_end_user(conversation.end_user_id)
            agent = await self.repository.get_agent(conversation.agent_id) if conversation.agent_id else None
            row: Dict[str, Any] = {
                "conversation_id": conversation.id,
                "status": conversation.status.value,
                "current_step": conversation.current_step,
                "created_at": conversation.created_at,
                "updated_at": conversation.updated_at,
                "user_phone": end_user.phone if end_user else None,
                "user_name": end_user.name if end_user else None,
                "agent_id": conversation.agent_id,
                "agent_name": agent.name if agent else None,
                "channel_id": conversation.channel_id,
                "broadcast_id": conversation.broadcast_id,
                "captured_variables": conversation.state.captured_variables,
            }
            if include_analytics:
                analytics = conversation.state.analytics
                row["analytics"] = {
                    "total_events": analytics.total_events,
                    "completion_rate": analytics.completion_rate,
                    "average_response_time": analytics.average_response_time,
                    "step_counts": analytics.step_counts,
                }
            rows.append(row)
        return rows

    async def start_broadcast_conversation(
        self,
        end_user_id: str,
        channel_id: str,
        broadcast_id: str,
        business_id: Optional[str] = None,
    ) -> Tuple[Conversation, OutboundPayload]:
        """
        Open (or re-link) the user's conversation to a broadcast being sent and
        return the opening message: one button per mapping keyword, or the
        broadcast's default message when it has no mapping.
        """
        broadcast = await self.repository.find_broadcast(broadcast_id)
        if broadcast is None:
            raise ValueError(f"Broadcast {broadcast_id} not found")

        now = datetime.utcnow()
        conversation = Conversation(
            end_user_id=end_user_id,
            channel_id=channel_id,
            broadcast_id=broadcast.id,
            business_id=business_id or broadcast.business_id,
            state=ConversationState(
                broadcast_id=broadcast.id,
                broadcast_name=broadcast.name,
                is_broadcast_conversation=True,
                broadcast_sent_at=now,
            ),
        )
        try:
            conversation = await self.repository.create_conversation(conversation)
            if self.tracker:
                await self.tracker.track(conversation.id, EventType.CONVERSATION_STARTED, {"broadcast_id": broadcast.id})
        except ConversationConflictError:
            existing = await self.repository.find_active_conversation(end_user_id, channel_id)
            logger.info(f"Re-linking open conversation {existing.id} to broadcast {broadcast.id}")
            conversation = await self.repository.patch_conversation(
                existing.id,
                {
                    "broadcast_id": broadcast.id,
                    "agent_id": None,
                    "current_step": ENTRY_STEP,
                    "state": {
                        "broadcast_id": broadcast.id,
                        "broadcast_name": broadcast.name,
                        "is_broadcast_conversation": True,
                        "broadcast_sent_at": now,
                        "assignment": None,
                        "repeat_count": 0,
                        "pending_confirmation": None,
                    },
                },
            )

        if not broadcast.has_agent_mapping:
            return conversation, broadcast_default_reply(broadcast)
        return conversation, build_broadcast_reply_options(broadcast.agent_mapping, strings.BROADCAST_OPTIONS_PROMPT)

    async def get_agent_flow_definition(self, agent_id: str) -> AgentFlowDefinition:
        agent = await self.repository.get_agent(agent_id)
        if agent is None:
            raise ValueError(f"Agent {agent_id} not found")
        steps = await self.repository.list_steps(agent_id)
        return AgentFlowDefinition(
            agent_id=agent.id,
            agent_name=agent.name,
            agent_status=agent.status,
            steps={s.step: s for s in steps},
            flow_map={s.step: list(s.next_possible_steps) for s in steps if s.next_possible_steps},
            total_steps=len(steps),
        )

    async def validate_agent_flow(self, agent_id: str) -> FlowValidationReport:
        definition = await self.get_agent_flow_definition(agent_id)
        report = validate_flow_definition(definition)
        logger.info(
            f"Validated flow of agent {agent_id}: valid={report['is_valid']}, "
            f"{len(report['issues'])} issues, {len(report['warnings'])} warnings"
        )
        return report
