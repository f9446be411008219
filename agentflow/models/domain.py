# /agentflow/models/domain.py

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

# Business entities the conversation engine reads but does not own:
# agents, broadcasts, end users and channels.

USABLE_AGENT_STATUSES = ("active", "approved")


class Agent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    business_id: Optional[str] = None
    status: str = Field(default="active", description="active, approved or anything else (unusable)")
    key_words: List[str] = Field(default_factory=list, description="Keywords used by regular resolution")
    ai_character: Optional[str] = Field(default=None, description="Persona handed to the AI model")
    global_rules: Optional[str] = Field(default=None, description="Rules every AI reply must follow")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_usable(self) -> bool:
        return (self.status or "").lower() in USABLE_AGENT_STATUSES


class DefaultMessage(BaseModel):
    type: str = "text"
    content: Optional[str] = None


class Broadcast(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    business_id: Optional[str] = None
    type: str = Field(default="outbound", description="inbound or outbound")
    # Insertion order matters: the first key is the fallback.
    agent_mapping: Dict[str, str] = Field(default_factory=dict, description="Reply keyword -> agent id")
    default_message: Optional[DefaultMessage] = Field(default=None, description="Sent when agent_mapping is empty")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_agent_mapping(self) -> bool:
        return bool(self.agent_mapping)


class EndUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    phone: str
    name: Optional[str] = None
    business_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Channel(BaseModel):
    """A business's messaging number on one provider."""
    model_config = ConfigDict(extra="allow")

    id: str
    business_id: Optional[str] = None
    provider_name: str = Field(default="meta", description="meta or karix")
    phone_number: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict, description="Provider credentials and sender numbers")

    def sender_number(self) -> Optional[str]:
        """
        Fallback sender when the webhook did not carry a receiver number.
        Priority: Karix primary number, sender_id, phone_number, from, first number.
        """
        numbers = self.config.get("phone_numbers") or []
        if self.provider_name == "karix":
            for entry in numbers:
                if isinstance(entry, dict) and entry.get("is_primary") and entry.get("number"):
                    return entry["number"]
        for key in ("sender_id", "phone_number", "from"):
            if self.config.get(key):
                return self.config[key]
        if self.phone_number:
            return self.phone_number
        if numbers:
            first = numbers[0]
            return first.get("number") if isinstance(first, dict) else first
        return None
