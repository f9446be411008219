# /agentflow/workflows/templates.py

import re
import logging
from datetime import datetime
from typing import Dict, Any, Optional, Union

from agentflow.config import strings
from agentflow.models.flow import AgentFlowStep, StepKind, StepOption
from agentflow.models.messages import TextReply, QuickReply, ListReply, ReplyContent, GlobalButton

# Rendering of step prompts into outbound payloads, with {{variable}}
# substitution over captured values and a few system tokens.

logger = logging.getLogger(__name__)

OutboundPayload = Union[TextReply, QuickReply, ListReply]

_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def _system_values(variables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, str]:
    now = now or datetime.now()
    name = variables.get("name") or variables.get("user_name") or "there"
    return {
        "user_name": str(name),
        "name": str(name),
        "phone": str(variables.get("phone") or ""),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
    }


def replace_variables(text: str, variables: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """
    Substitute {{name}} tokens, case-insensitively. Captured variables win over
    system tokens except for name/user_name, which fall back to "there".
    Unknown tokens become the empty string.
    """
    if not text or "{{" not in text:
        return text
    lowered = {str(k).lower(): v for k, v in variables.items()}
    system = _system_values(lowered, now)

    def _sub(match: re.Match) -> str:
        key = match.group(1).lower()
        if key in ("name", "user_name"):
            return system[key]
        if key in lowered:
            value = lowered[key]
            return "" if value is None else str(value)
        return system.get(key, "")

    return _TOKEN_PATTERN.sub(_sub, text)


def replace_variables_in_content(content: Any, variables: Dict[str, Any], now: Optional[datetime] = None) -> Any:
    """Walk dicts/lists and substitute tokens in every string leaf."""
    if isinstance(content, str):
        return replace_variables(content, variables, now)
    if isinstance(content, dict):
        return {k: replace_variables_in_content(v, variables, now) for k, v in content.items()}
    if isinstance(content, list):
        return [replace_variables_in_content(v, variables, now) for v in content]
    return content


def render_step_response(step: AgentFlowStep, variables: Optional[Dict[str, Any]] = None) -> OutboundPayload:
    """Build the outbound payload for a step's prompt."""
    variables = variables or {}
    try:
        raw = step.message_content.model_dump(by_alias=True, exclude_none=True)
        content = replace_variables_in_content(raw, variables)
        nested_text = (content.get("content") or {}).get("text")
        kind = step.kind

        if kind in (StepKind.QUICK_REPLY, StepKind.BUTTONS):
            return QuickReply(
                content=ReplyContent(text=nested_text or content.get("text") or strings.DEFAULT_OPTIONS_PROMPT),
                options=[StepOption.model_validate(o) for o in content.get("options", [])],
            )
        if kind == StepKind.LIST:
            buttons = content.get("globalButtons") or [{"type": "text", "title": strings.DEFAULT_LIST_BUTTON}]
            return ListReply(
                title=content.get("title") or strings.DEFAULT_LIST_TITLE,
                body=content.get("body") or "",
                global_buttons=[GlobalButton.model_validate(b) for b in buttons],
                items=content.get("items", []),
            )
        return TextReply(text=nested_text or content.get("text") or strings.DEFAULT_STEP_PROMPT)
    except Exception as e:
        logger.error(f"Error rendering step {step.step}: {e}")
        return TextReply(text=strings.DEFAULT_STEP_PROMPT)


def render_retry_response(
    step: AgentFlowStep, reason: Optional[str], variables: Optional[Dict[str, Any]] = None
) -> OutboundPayload:
    """The step prompt again, prefixed with why the last answer was rejected."""
    payload = render_step_response(step, variables)
    prefix = f"{strings.RETRY_PREFIX} {reason or strings.VALIDATION_RETRY_FALLBACK}\n\n"
    if isinstance(payload, TextReply):
        payload.text = prefix + payload.text
    elif isinstance(payload, QuickReply):
        payload.content.text = prefix + payload.content.text
    else:
        payload.body = prefix + payload.body
    return payload


def with_text(payload: OutboundPayload, text: str) -> OutboundPayload:
    """Same payload shape, different leading text (used for AI replies over a step prompt)."""
    if isinstance(payload, TextReply):
        return TextReply(text=text)
    if isinstance(payload, QuickReply):
        return QuickReply(content=ReplyContent(text=text), options=payload.options)
    return payload.model_copy(update={"body": text})


def build_confirmation_prompt(message: str) -> QuickReply:
    return QuickReply(
        content=ReplyContent(text=message),
        options=[
            StepOption(title=strings.CONFIRM_YES_TITLE, postback_text=strings.CONFIRM_YES_TOKEN),
            StepOption(title=strings.CONFIRM_NO_TITLE, postback_text=strings.CONFIRM_NO_TOKEN),
        ],
    )


def build_restart_prompt(message: str, current_step: str) -> QuickReply:
    return QuickReply(
        content=ReplyContent(text=message),
        options=[
            StepOption(title=strings.RESTART_TITLE, postback_text=strings.RESTART_TOKEN),
            StepOption(title=strings.CONTINUE_TITLE, postback_text=current_step),
        ],
    )


def build_broadcast_reply_options(agent_mapping: Dict[str, str], text: Optional[str] = None) -> OutboundPayload:
    """Opening message of a broadcast: one button per mapping keyword (providers cap buttons at 3)."""
    keywords = list(agent_mapping.keys())
    if not keywords:
        return TextReply(text=text or strings.BROADCAST_DEFAULT_REPLY)
    return QuickReply(
        content=ReplyContent(text=text or strings.DEFAULT_OPTIONS_PROMPT),
        options=[StepOption(title=k, postback_text=k) for k in keywords[:3]],
    )


def personalize_response(payload: OutboundPayload, user_vars: Dict[str, Any]) -> OutboundPayload:
    """Last-pass substitution before delivery; returns the payload unchanged on any error."""
    try:
        data = payload.model_dump(by_alias=True)
        replaced = replace_variables_in_content(data, user_vars)
        return type(payload).model_validate(replaced)
    except Exception as e:
        logger.error(f"Message personalization failed: {e}")
        return payload
