# /agentflow/models/api.py

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from agentflow.models.flow import ENTRY_STEP


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str


class ResetConversationRequest(BaseModel):
    step: str = ENTRY_STEP
    clear_variables: bool = False
    reason: str = "manual_reset"


class CloseConversationRequest(BaseModel):
    reason: str = "completed"
    details: Dict[str, Any] = Field(default_factory=dict)


class StartBroadcastRequest(BaseModel):
    end_user_id: str
    channel_id: str
    business_id: Optional[str] = None
