# /agentflow/services/handoff_service.py

import logging
from datetime import datetime
from typing import Optional

from agentflow.models.conversation import Conversation
from agentflow.utils.alerting import AlertingService

logger = logging.getLogger(__name__)


class HandoffNotifier:
    """Tells the human-support desk that a conversation was escalated. Best effort."""

    def __init__(self, webhook: Optional[AlertingService] = None):
        self.webhook = webhook

    async def notify(self, conversation: Conversation, reason: str, last_message: Optional[str] = None) -> bool:
        logger.info(f"Escalating conversation {conversation.id} to a human agent: {reason}")
        if self.webhook is None:
            return False
        payload = {
            "event": "conversation_escalated",
            "conversation_id": conversation.id,
            "end_user_id": conversation.end_user_id,
            "channel_id": conversation.channel_id,
            "agent_id": conversation.agent_id,
            "step": conversation.current_step,
            "reason": reason,
            "last_message": last_message,
            "captured_variables": conversation.state.captured_variables,
            "escalated_at": datetime.utcnow().isoformat(),
        }
        try:
            return await self.webhook.post(payload)
        except Exception as e:
            logger.error(f"Handoff notification failed for conversation {conversation.id}: {e}")
            return False
