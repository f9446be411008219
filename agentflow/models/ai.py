# /agentflow/models/ai.py

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


class AIResponseKind(str, Enum):
    VALID_INPUT = "validinput"
    INVALID_INPUT = "invalidinput"
    TRANSFORM = "transform"
    RESTART = "restart"
    ESCALATE = "escalate"
    KB_QUERY = "KBquery"
    GREETING = "greeting"
    PROFANITY = "profanity"


ALLOWED_AI_TYPES = [kind.value for kind in AIResponseKind]


class AIResponse(BaseModel):
    """Structured classification returned by the AI model."""
    type: AIResponseKind = Field(default=AIResponseKind.INVALID_INPUT)
    msg: str = Field(..., description="User-facing reply")
    value: Optional[Any] = Field(default=None, description="Extracted or normalized value")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
