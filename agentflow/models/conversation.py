# /agentflow/models/conversation.py

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from agentflow.models.flow import ENTRY_STEP


class ConversationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ESCALATED = "escalated"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ConversationStatus.COMPLETED, ConversationStatus.ABANDONED, ConversationStatus.ESCALATED)


class AnalyticsEvent(BaseModel):
    """One entry of the append-only analytics log."""
    type: str = Field(..., description="Event type, e.g. step_completed")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    step: Optional[str] = Field(default=None, description="Step the conversation was on")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event-specific payload")


class ConversationAnalytics(BaseModel):
    events: List[AnalyticsEvent] = Field(default_factory=list)
    total_events: int = 0
    last_event_at: Optional[datetime] = None
    step_counts: Dict[str, int] = Field(default_factory=dict, description="Visits per step")
    completion_rate: float = 0.0
    average_response_time: float = 0.0


class PendingConfirmation(BaseModel):
    """A staged value waiting for a yes/no from the user."""
    value: Any = Field(..., description="Value the AI extracted or transformed")
    original_input: Optional[str] = Field(default=None, description="What the user actually typed")
    step: str = Field(..., description="Step the value belongs to")
    variable: Optional[str] = Field(default=None, description="Variable the value will be stored under")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class EscalationInfo(BaseModel):
    reason: str
    step: Optional[str] = None
    escalated_at: datetime = Field(default_factory=datetime.utcnow)


class AgentAssignment(BaseModel):
    """How the bound agent was picked."""
    match_kind: Optional[str] = None
    keyword: Optional[str] = None
    substitution: Optional[str] = None
    assigned_at: datetime = Field(default_factory=datetime.utcnow)


class ConversationState(BaseModel):
    """
    Typed replacement for the free-form metadata bag. Persisted as one
    sub-document; patches merge field by field.
    """
    model_config = ConfigDict(extra="ignore")

    captured_variables: Dict[str, Any] = Field(default_factory=dict, description="Variable name -> captured value")
    pending_confirmation: Optional[PendingConfirmation] = Field(default=None)
    analytics: ConversationAnalytics = Field(default_factory=ConversationAnalytics)
    repeat_count: int = Field(default=0, description="Consecutive validation failures on the current step")
    restart_offered: bool = Field(default=False, description="An AI restart offer is waiting for an answer")

    # Broadcast linkage
    broadcast_id: Optional[str] = None
    broadcast_name: Optional[str] = None
    is_broadcast_conversation: bool = False
    broadcast_sent_at: Optional[datetime] = None

    assignment: Optional[AgentAssignment] = None
    escalation: Optional[EscalationInfo] = None

    completion_reason: Optional[str] = None
    close_details: Dict[str, Any] = Field(default_factory=dict)
    last_reset_at: Optional[datetime] = None
    last_reset_reason: Optional[str] = None
    last_user_message_at: Optional[datetime] = None


class Conversation(BaseModel):
    """Conversation between one end user and one channel, driven by an agent's flow."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Conversation identifier")
    end_user_id: str = Field(..., description="Owning end user")
    channel_id: str = Field(..., description="Owning channel")
    agent_id: Optional[str] = Field(default=None, description="Bound agent, if resolved")
    broadcast_id: Optional[str] = Field(default=None, description="Originating broadcast, if any")
    business_id: Optional[str] = Field(default=None, description="Business the channel belongs to")
    current_step: str = Field(default=ENTRY_STEP, description="Key of the step awaiting input")
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE)
    state: ConversationState = Field(default_factory=ConversationState)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=False)

    @property
    def key(self) -> str:
        return conversation_key(self.end_user_id, self.channel_id)

    @property
    def is_broadcast(self) -> bool:
        return bool(self.broadcast_id)


def conversation_key(end_user_id: str, channel_id: str) -> str:
    return f"{end_user_id}:{channel_id}"
