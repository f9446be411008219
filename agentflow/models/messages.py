# /agentflow/models/messages.py

from datetime import datetime
from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from pydantic import BaseModel, Field, ConfigDict

from agentflow.models.flow import StepOption, ListItem

# Message shapes crossing the service boundary: what provider adapters hand
# to the pipeline, and what the engine hands to delivery adapters.


class Participant(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None


class InboundMessage(BaseModel):
    """Provider-independent inbound message."""
    type: str = Field(default="text", description="text, interactive, image, ...")
    text: str = Field(default="", description="Normalized text used for validation")
    postback: Optional[str] = Field(default=None, description="Reply id of an interactive selection")
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    message_id: Optional[str] = None
    sender: Participant = Field(default_factory=Participant, description="End user")
    receiver: Participant = Field(default_factory=Participant, description="Business number the user wrote to")
    service: str = Field(default="meta", description="Provider the message came from")
    channel_id: Optional[str] = Field(default=None, description="Explicit channel, skips lookup by receiver")
    broadcast_id: Optional[str] = Field(default=None, description="Broadcast this message replies to, if known")
    webhook_context: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=datetime.utcnow)


class TextReply(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ReplyContent(BaseModel):
    text: str


class QuickReply(BaseModel):
    type: Literal["quick_reply"] = "quick_reply"
    content: ReplyContent
    options: List[StepOption] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.content.text


class GlobalButton(BaseModel):
    type: str = "text"
    title: str


class ListReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["list"] = "list"
    title: str
    body: str
    global_buttons: List[GlobalButton] = Field(default_factory=list, alias="globalButtons")
    items: List[ListItem] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.body


OutboundMessage = Annotated[Union[TextReply, QuickReply, ListReply], Field(discriminator="type")]


def reply_text(message: Union[TextReply, QuickReply, ListReply]) -> str:
    return message.text


class DeliveryStatus(BaseModel):
    """Sent/delivered/read receipt reported by a provider."""
    service: str
    message_id: Optional[str] = None
    status: str
    recipient: Optional[str] = None
    timestamp: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)
