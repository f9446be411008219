# /agentflow/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict


STOP_STEP = "stop"
ENTRY_STEP = "step0"


class StepKind(str, Enum):
    TEXT = "text"
    QUICK_REPLY = "quick_reply"
    BUTTONS = "buttons"
    LIST = "list"

    @property
    def is_interactive(self) -> bool:
        return self is not StepKind.TEXT


class StepOption(BaseModel):
    """A selectable option of an interactive step."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(default="text", description="Option type as authored")
    title: Optional[str] = Field(default=None, description="Label shown to the user")
    postback_text: Optional[str] = Field(
        default=None,
        alias="postbackText",
        description="Machine-readable token, formatted '<nextStep>/<freeform>'"
    )


class ListItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    options: List[StepOption] = Field(default_factory=list)


class MessageContent(BaseModel):
    """
    Operator-authored message template of a step.
    Text may live either in `text` or in `content.text`; both are honoured.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Optional[str] = Field(default=None, description="Message type override")
    text: Optional[str] = Field(default=None, description="Prompt text")
    content: Optional[Dict[str, Any]] = Field(default=None, description="Nested content block with its own text")
    options: List[StepOption] = Field(default_factory=list, description="Quick-reply options")
    title: Optional[str] = Field(default=None, description="List title")
    body: Optional[str] = Field(default=None, description="List body")
    global_buttons: Optional[List[Dict[str, Any]]] = Field(default=None, alias="globalButtons")
    items: List[ListItem] = Field(default_factory=list, description="List sections")

    @property
    def prompt_text(self) -> Optional[str]:
        if self.content and self.content.get("text"):
            return self.content["text"]
        return self.text


class AgentFlowStep(BaseModel):
    """One node of an operator-authored conversation graph."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Step node identity")
    agent_id: str = Field(..., description="Owning agent")
    step: str = Field(..., description="Step key, unique per agent")
    step_name: Optional[str] = None
    type_of_message: str = Field(default=StepKind.TEXT.value, description="text, quick_reply/buttons or list")
    message_content: MessageContent = Field(default_factory=MessageContent)
    regex: Optional[str] = Field(default=None, description="Validation pattern for free-text steps")
    mandatory: bool = Field(default=False, description="Whether an answer is required")
    variable: Optional[str] = Field(default=None, description="Name the captured value is stored under")
    next_possible_steps: List[str] = Field(default_factory=list, description="Ordered successor keys, may include 'stop'")
    purpose: Optional[str] = Field(default=None, description="What the step is for, fed to the AI prompt")
    enable_ai_takeover: bool = Field(default=False, description="Let the AI interpret input that fails validation")
    ai_config: Dict[str, Any] = Field(default_factory=dict, description="Provider, model, max_tokens, temperature")

    @property
    def kind(self) -> StepKind:
        raw = self.message_content.type or self.type_of_message or StepKind.TEXT.value
        try:
            return StepKind(raw)
        except ValueError:
            return StepKind.TEXT

    @property
    def interactive_options(self) -> List[StepOption]:
        if self.message_content.options:
            return self.message_content.options
        if self.message_content.items:
            return self.message_content.items[0].options
        return []


class AgentFlowDefinition(BaseModel):
    """All steps of one agent, keyed by step key, plus the successor map."""
    agent_id: str
    agent_name: Optional[str] = None
    agent_status: Optional[str] = None
    steps: Dict[str, AgentFlowStep] = Field(default_factory=dict)
    flow_map: Dict[str, List[str]] = Field(default_factory=dict)
    total_steps: int = 0
