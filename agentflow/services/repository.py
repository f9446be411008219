# /agentflow/services/repository.py

import asyncio
import copy
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from agentflow.exceptions import ConversationConflictError, ConversationNotFoundError
from agentflow.models.conversation import Conversation, ConversationState, ConversationStatus
from agentflow.models.domain import Agent, Broadcast, Channel, EndUser
from agentflow.models.flow import AgentFlowStep
from agentflow.models.messages import DeliveryStatus

# The persistence seam. The pipeline only ever talks to ConversationRepository;
# InMemoryRepository backs development and tests, MongoRepository production.

logger = logging.getLogger(__name__)

OPEN_STATUSES = (ConversationStatus.PENDING, ConversationStatus.ACTIVE, ConversationStatus.WAITING)


class ConversationRepository(Protocol):
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...
    async def find_active_conversation(self, end_user_id: str, channel_id: str) -> Optional[Conversation]: ...
    async def find_active_conversations_for_user(self, end_user_id: str) -> List[Conversation]: ...
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...
    async def patch_conversation(self, conversation_id: str, delta: Dict[str, Any]) -> Conversation: ...
    async def list_conversations(self, filters: Optional[Dict[str, Any]] = None) -> List[Conversation]: ...

    async def find_step(self, agent_id: str, step_key: str) -> Optional[AgentFlowStep]: ...
    async def list_steps(self, agent_id: str) -> List[AgentFlowStep]: ...

    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...
    async def list_agents(self) -> List[Agent]: ...
    async def find_agents_by_business(self, business_id: str) -> List[Agent]: ...
    async def find_broadcast(self, broadcast_id: str) -> Optional[Broadcast]: ...

    async def get_end_user(self, end_user_id: str) -> Optional[EndUser]: ...
    async def find_end_user_by_phone(self, phone: str, business_id: Optional[str] = None) -> Optional[EndUser]: ...
    async def create_end_user(self, end_user: EndUser) -> EndUser: ...

    async def get_channel(self, channel_id: str) -> Optional[Channel]: ...
    async def find_channel_by_phone(self, phone: str) -> Optional[Channel]: ...

    async def record_delivery_status(self, status: DeliveryStatus) -> None: ...


def apply_conversation_delta(conversation: Conversation, delta: Dict[str, Any]) -> Conversation:
    """
    Merge a patch into a conversation. Top-level fields are replaced; a
    "state" entry is merged field by field into the existing state.
    """
    data = conversation.model_dump()
    for key, value in delta.items():
        if key == "state":
            state_patch = value.model_dump() if isinstance(value, ConversationState) else dict(value)
            data["state"].update(state_patch)
        elif key in data:
            data[key] = value
        else:
            raise ValueError(f"Unknown conversation field '{key}'")
    data["updated_at"] = delta.get("updated_at") or datetime.utcnow()
    return Conversation.model_validate(data)


def _matches(conversation: Conversation, filters: Dict[str, Any]) -> bool:
    for field in ("agent_id", "channel_id", "end_user_id", "broadcast_id", "business_id"):
        if filters.get(field) and getattr(conversation, field) != filters[field]:
            return False
    status = filters.get("status")
    if status and conversation.status.value != str(getattr(status, "value", status)):
        return False
    if filters.get("start_date") and conversation.created_at < filters["start_date"]:
        return False
    if filters.get("end_date") and conversation.created_at > filters["end_date"]:
        return False
    return True


class InMemoryRepository:
    """Dict-backed repository. Seed it with agents, steps, broadcasts and channels."""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.steps: Dict[str, Dict[str, AgentFlowStep]] = {}
        self.agents: Dict[str, Agent] = {}
        self.broadcasts: Dict[str, Broadcast] = {}
        self.end_users: Dict[str, EndUser] = {}
        self.channels: Dict[str, Channel] = {}
        self.delivery_statuses: List[DeliveryStatus] = []
        self._write_lock = asyncio.Lock()

    # --- Seeding ---

    def add_agent(self, agent: Agent, steps: Optional[List[AgentFlowStep]] = None) -> Agent:
        self.agents[agent.id] = agent
        for step in steps or []:
            self.add_step(step)
        return agent

    def add_step(self, step: AgentFlowStep) -> AgentFlowStep:
        if step.id is None:
            step.id = str(uuid.uuid4())
        self.steps.setdefault(step.agent_id, {})[step.step] = step
        return step

    def add_broadcast(self, broadcast: Broadcast) -> Broadcast:
        self.broadcasts[broadcast.id] = broadcast
        return broadcast

    def add_channel(self, channel: Channel) -> Channel:
        self.channels[channel.id] = channel
        return channel

    def add_end_user(self, end_user: EndUser) -> EndUser:
        self.end_users[end_user.id] = end_user
        return end_user

    # --- Conversations ---

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def find_active_conversation(self, end_user_id: str, channel_id: str) -> Optional[Conversation]:
        candidates = [
            c for c in self.conversations.values()
            if c.end_user_id == end_user_id and c.channel_id == channel_id and c.status in OPEN_STATUSES
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda c: c.updated_at)
        return latest.model_copy(deep=True)

    async def find_active_conversations_for_user(self, end_user_id: str) -> List[Conversation]:
        return [
            c.model_copy(deep=True) for c in self.conversations.values()
            if c.end_user_id == end_user_id and c.status in OPEN_STATUSES
        ]

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._write_lock:
            for existing in self.conversations.values():
                if (
                    existing.end_user_id == conversation.end_user_id
                    and existing.channel_id == conversation.channel_id
                    and existing.status in OPEN_STATUSES
                ):
                    raise ConversationConflictError(conversation.end_user_id, conversation.channel_id)
            self.conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def patch_conversation(self, conversation_id: str, delta: Dict[str, Any]) -> Conversation:
        async with self._write_lock:
            current = self.conversations.get(conversation_id)
            if current is None:
                raise ConversationNotFoundError(conversation_id)
            updated = apply_conversation_delta(current, copy.deepcopy(delta))
            self.conversations[conversation_id] = updated
        return updated.model_copy(deep=True)

    async def list_conversations(self, filters: Optional[Dict[str, Any]] = None) -> List[Conversation]:
        filters = filters or {}
        found = [c.model_copy(deep=True) for c in self.conversations.values() if _matches(c, filters)]
        return sorted(found, key=lambda c: c.created_at)

    # --- Flow definitions ---

    async def find_step(self, agent_id: str, step_key: str) -> Optional[AgentFlowStep]:
        step = self.steps.get(agent_id, {}).get(step_key)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, agent_id: str) -> List[AgentFlowStep]:
        steps = self.steps.get(agent_id, {})
        return [steps[key].model_copy(deep=True) for key in sorted(steps)]

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    async def list_agents(self) -> List[Agent]:
        return sorted(self.agents.values(), key=lambda a: a.created_at)

    async def find_agents_by_business(self, business_id: str) -> List[Agent]:
        return [a for a in await self.list_agents() if a.business_id == business_id]

    async def find_broadcast(self, broadcast_id: str) -> Optional[Broadcast]:
        return self.broadcasts.get(broadcast_id)

    # --- Users & channels ---

    async def get_end_user(self, end_user_id: str) -> Optional[EndUser]:
        return self.end_users.get(end_user_id)

    async def find_end_user_by_phone(self, phone: str, business_id: Optional[str] = None) -> Optional[EndUser]:
        for user in self.end_users.values():
            if user.phone == phone and (business_id is None or user.business_id in (None, business_id)):
                return user
        return None

    async def create_end_user(self, end_user: EndUser) -> EndUser:
        for user in self.end_users.values():
            if user.phone == end_user.phone and user.business_id == end_user.business_id:
                return user
        self.end_users[end_user.id] = end_user
        return end_user

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        return self.channels.get(channel_id)

    async def find_channel_by_phone(self, phone: str) -> Optional[Channel]:
        digits = _digits(phone)
        for channel in self.channels.values():
            numbers = [channel.phone_number] + [
                n.get("number") if isinstance(n, dict) else n for n in channel.config.get("phone_numbers", [])
            ]
            if any(n and _digits(n) == digits for n in numbers):
                return channel
        return None

    async def record_delivery_status(self, status: DeliveryStatus) -> None:
        self.delivery_statuses.append(status)


def _digits(phone: str) -> str:
    return "".join(ch for ch in str(phone) if ch.isdigit())
