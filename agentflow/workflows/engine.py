# /agentflow/workflows/engine.py

"""
Per-conversation flow state machine.

Given the conversation, its current step and the inbound message, the engine:
- Resolves pending confirmations and restart offers
- Validates the reply against the step rules
- Hands invalid replies to the AI bridge when the step allows takeover
- Decides the next step (or completion) and renders its prompt
- Computes the conversation delta and the analytics events to record

The engine never writes. The caller persists `delta` with
patch_conversation() and tracks `events`; that keeps every transition a
single idempotent patch by conversation id.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TypedDict

from agentflow.config import strings
from agentflow.exceptions import AIProviderError
from agentflow.models.ai import AIResponse, AIResponseKind
from agentflow.models.conversation import Conversation, ConversationStatus, EscalationInfo, PendingConfirmation
from agentflow.models.domain import Agent
from agentflow.models.flow import ENTRY_STEP, STOP_STEP, AgentFlowStep
from agentflow.models.messages import InboundMessage, TextReply
from agentflow.services.event_tracker import EventType
from agentflow.utils.metrics import flow_transitions_counter, validation_outcomes_counter
from agentflow.workflows.templates import (
    OutboundPayload,
    build_confirmation_prompt,
    build_restart_prompt,
    render_retry_response,
    render_step_response,
    with_text,
)
from agentflow.workflows.validator import ValidationKind, ValidationResult, validate_step_response

logger = logging.getLogger(__name__)


class FlowOutcome(str, Enum):
    STARTED = "started"
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RETRY = "retry"
    NEXT_STEP_MISSING = "next_step_missing"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    CONFIRMED = "confirmed"
    CONFIRMATION_REJECTED = "confirmation_rejected"
    NOTHING_TO_CONFIRM = "nothing_to_confirm"
    RESTART_OFFERED = "restart_offered"
    RESTARTED = "restarted"
    CONTINUED = "continued"
    ESCALATED = "escalated"
    AI_REPLY = "ai_reply"
    ERROR = "error"


TrackedEvent = Tuple[EventType, Dict[str, Any]]


class EngineResult(TypedDict):
    """Result of one flow transition."""
    outcome: FlowOutcome
    payload: OutboundPayload
    delta: Dict[str, Any]
    events: List[TrackedEvent]
    next_step: Optional[str]
    ai_response: Optional[AIResponse]


def _engine_result(
    outcome: FlowOutcome,
    payload: OutboundPayload,
    delta: Optional[Dict[str, Any]] = None,
    events: Optional[List[TrackedEvent]] = None,
    next_step: Optional[str] = None,
    ai_response: Optional[AIResponse] = None,
) -> EngineResult:
    return {
        "outcome": outcome,
        "payload": payload,
        "delta": delta or {},
        "events": events or [],
        "next_step": next_step,
        "ai_response": ai_response,
    }


def render_variables(conversation: Conversation, user_context: Dict[str, Any]) -> Dict[str, Any]:
    """Captured variables plus the user's own name/phone for template substitution."""
    variables: Dict[str, Any] = {}
    if user_context.get("name"):
        variables["user_name"] = user_context["name"]
    if user_context.get("phone"):
        variables["phone"] = user_context["phone"]
    variables.update(conversation.state.captured_variables)
    return variables


class FlowEngine:
    """
    Transition function over an agent's step graph.

    `repository` is only read from (next-step lookups). `ai_bridge` is
    consulted for invalid replies on AI-takeover steps.
    """

    def __init__(self, repository, ai_bridge=None):
        self.repository = repository
        self.ai_bridge = ai_bridge

    # ==================== Entry points ====================

    def start(self, conversation: Conversation, entry_step: AgentFlowStep, user_context: Dict[str, Any]) -> EngineResult:
        """First contact: send the entry step's prompt, consume no input."""
        payload = render_step_response(entry_step, render_variables(conversation, user_context))
        delta: Dict[str, Any] = {"current_step": entry_step.step}
        if conversation.state.repeat_count:
            delta["state"] = {"repeat_count": 0}
        return _engine_result(
            FlowOutcome.STARTED,
            payload,
            delta=delta,
            events=[(EventType.CONVERSATION_STARTED, {"agent_id": entry_step.agent_id, "step": entry_step.step})],
            next_step=entry_step.step,
        )

    async def process(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        message: InboundMessage,
        agent: Optional[Agent] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """
        Apply one inbound message to the conversation sitting on `step`.
        Any unexpected error yields a generic apology and an empty delta, so
        the conversation stays on a step that exists.
        """
        user_context = user_context or {}
        try:
            result = await self._process(conversation, step, message, agent, user_context)
        except Exception as e:
            logger.error(
                f"Flow transition failed for conversation {conversation.id} at step {step.step}: {e}",
                exc_info=True,
            )
            result = _engine_result(
                FlowOutcome.ERROR,
                TextReply(text=strings.SYSTEM_GENERAL_ERROR),
                events=[(EventType.ERROR_OCCURRED, {"error": "flow_transition_failed", "step": step.step})],
            )
        flow_transitions_counter.labels(outcome=result["outcome"].value).inc()
        return result

    async def _process(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        message: InboundMessage,
        agent: Optional[Agent],
        user_context: Dict[str, Any],
    ) -> EngineResult:
        token = (message.postback or message.text or "").strip()
        state = conversation.state

        confirmation = self._confirmation_token(conversation, message)
        if confirmation:
            return await self.handle_confirmation(conversation, step, confirmation, user_context)

        if state.restart_offered:
            restart = await self._handle_restart_answer(conversation, step, token, user_context)
            if restart is not None:
                return restart

        validation = validate_step_response(step, message.text, message.postback)
        validation_outcomes_counter.labels(kind=validation["kind"].value).inc()

        if validation["kind"] == ValidationKind.REGEX_ERROR:
            logger.error(f"Invalid regex configured on agent {step.agent_id} step {step.step}: {step.regex!r}")

        if validation["is_valid"]:
            events: List[TrackedEvent] = [
                (EventType.VALIDATION_SUCCEEDED, {"validation_type": validation["kind"].value, "input": message.text})
            ]
            return await self.advance(
                conversation, step, validation["captured_value"], validation["next_step"], user_context, events
            )

        failed_event: TrackedEvent = (
            EventType.VALIDATION_FAILED,
            {"validation_type": validation["kind"].value, "reason": validation["error"], "input": message.text},
        )

        if step.enable_ai_takeover and self.ai_bridge is not None:
            return await self._ai_takeover(conversation, step, message, agent, user_context, validation, failed_event)

        return self.retry(conversation, step, validation["error"], user_context, [failed_event])

    # ==================== Transitions ====================

    async def advance(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        captured_value: Any,
        next_step_override: Optional[str],
        user_context: Dict[str, Any],
        events: Optional[List[TrackedEvent]] = None,
        ai_message: Optional[str] = None,
    ) -> EngineResult:
        """Store the captured value and move to the next step, or complete the flow."""
        events = list(events or [])
        captured = dict(conversation.state.captured_variables)
        if step.variable and captured_value is not None and captured_value != "":
            captured[step.variable] = captured_value

        state_delta: Dict[str, Any] = {
            "captured_variables": captured,
            "repeat_count": 0,
            "pending_confirmation": None,
            "restart_offered": False,
        }
        events.append((EventType.STEP_COMPLETED, {"step": step.step, "variable": step.variable}))

        next_key = next_step_override or (step.next_possible_steps[0] if step.next_possible_steps else None)
        variables = {**render_variables(conversation, user_context), **captured}

        if not next_key or next_key == STOP_STEP:
            now = datetime.utcnow()
            state_delta["completion_reason"] = "flow_completed"
            events.append((EventType.FLOW_COMPLETED, {"last_step": step.step}))
            logger.info(f"Conversation {conversation.id} completed at step {step.step}")
            return _engine_result(
                FlowOutcome.COMPLETED,
                TextReply(text=ai_message or strings.FLOW_COMPLETED),
                delta={"status": ConversationStatus.COMPLETED, "completed_at": now, "state": state_delta},
                events=events,
            )

        next_node = await self.repository.find_step(step.agent_id, next_key)
        if next_node is None:
            # Stay on the current step; the captured value is still kept.
            logger.warning(f"Next step '{next_key}' not found for agent {step.agent_id} (from {step.step})")
            return _engine_result(
                FlowOutcome.NEXT_STEP_MISSING,
                TextReply(text=strings.FLOW_NEXT_STEP_MISSING),
                delta={"state": state_delta},
                events=events,
            )

        payload = render_step_response(next_node, variables)
        if ai_message:
            payload = with_text(payload, ai_message)
        return _engine_result(
            FlowOutcome.ADVANCED,
            payload,
            delta={"current_step": next_node.step, "state": state_delta},
            events=events,
            next_step=next_node.step,
        )

    def retry(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        reason: Optional[str],
        user_context: Dict[str, Any],
        events: Optional[List[TrackedEvent]] = None,
    ) -> EngineResult:
        """Stay on the step, bump the repeat count, re-send the prompt prefixed with the reason."""
        repeat_count = conversation.state.repeat_count + 1
        logger.info(f"Validation failed on step {step.step}, repeat count {repeat_count} for user {conversation.end_user_id}")
        return _engine_result(
            FlowOutcome.RETRY,
            render_retry_response(step, reason, render_variables(conversation, user_context)),
            delta={"state": {"repeat_count": repeat_count}},
            events=events,
            next_step=step.step,
        )

    # ==================== Confirmation ====================

    @staticmethod
    def _confirmation_token(conversation: Conversation, message: InboundMessage) -> Optional[str]:
        for candidate in (message.postback, message.text):
            if candidate and candidate.strip() in (strings.CONFIRM_YES_TOKEN, strings.CONFIRM_NO_TOKEN):
                return candidate.strip()
        # Providers that only echo the button title.
        if conversation.state.pending_confirmation is not None:
            answer = (message.text or "").strip().lower()
            if answer == strings.CONFIRM_YES_TITLE.lower():
                return strings.CONFIRM_YES_TOKEN
            if answer == strings.CONFIRM_NO_TITLE.lower():
                return strings.CONFIRM_NO_TOKEN
        return None

    async def handle_confirmation(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        token: str,
        user_context: Dict[str, Any],
    ) -> EngineResult:
        pending = conversation.state.pending_confirmation
        if pending is None:
            return _engine_result(FlowOutcome.NOTHING_TO_CONFIRM, TextReply(text=strings.CONFIRM_NOTHING_PENDING))

        if token == strings.CONFIRM_YES_TOKEN:
            logger.info(f"User confirmed staged value for {pending.variable} on step {pending.step}")
            result = await self.advance(
                conversation,
                step.model_copy(update={"variable": pending.variable or step.variable}),
                pending.value,
                None,
                user_context,
                events=[(EventType.VALIDATION_SUCCEEDED, {"validation_type": "ai_confirmation", "input": str(pending.value)})],
            )
            if result["outcome"] == FlowOutcome.NEXT_STEP_MISSING and pending.variable:
                result["payload"] = TextReply(
                    text=strings.CONFIRM_RECORDED.format(variable=pending.variable, value=pending.value)
                )
            if result["outcome"] == FlowOutcome.ADVANCED:
                result["outcome"] = FlowOutcome.CONFIRMED
            return result

        payload = render_step_response(step, render_variables(conversation, user_context))
        prompt = payload.text or strings.CONFIRM_ASK_AGAIN
        return _engine_result(
            FlowOutcome.CONFIRMATION_REJECTED,
            with_text(payload, strings.CONFIRM_REJECTED_PREFIX + prompt),
            delta={"state": {"pending_confirmation": None}},
            next_step=step.step,
        )

    # ==================== Restart ====================

    async def _handle_restart_answer(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        token: str,
        user_context: Dict[str, Any],
    ) -> Optional[EngineResult]:
        answer = token.lower()
        if answer in (strings.RESTART_TOKEN, strings.RESTART_TITLE.lower()):
            entry = await self.repository.find_step(step.agent_id, ENTRY_STEP)
            if entry is None:
                logger.warning(f"Restart requested but agent {step.agent_id} has no {ENTRY_STEP}")
                return None
            logger.info(f"Restarting conversation {conversation.id} from {ENTRY_STEP}")
            return _engine_result(
                FlowOutcome.RESTARTED,
                render_step_response(entry, render_variables(conversation, user_context)),
                delta={
                    "current_step": ENTRY_STEP,
                    "state": {
                        "restart_offered": False,
                        "repeat_count": 0,
                        "pending_confirmation": None,
                        "last_reset_at": datetime.utcnow(),
                        "last_reset_reason": "user_restart",
                    },
                },
                next_step=ENTRY_STEP,
            )
        if answer in (strings.CONTINUE_TOKEN, strings.CONTINUE_TITLE.lower(), step.step.lower()):
            return _engine_result(
                FlowOutcome.CONTINUED,
                render_step_response(step, render_variables(conversation, user_context)),
                delta={"state": {"restart_offered": False}},
                next_step=step.step,
            )
        return None

    # ==================== AI takeover ====================

    async def _ai_takeover(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        message: InboundMessage,
        agent: Optional[Agent],
        user_context: Dict[str, Any],
        validation: ValidationResult,
        failed_event: TrackedEvent,
    ) -> EngineResult:
        logger.info(f"AI takeover enabled for step {step.step}, processing with AI")
        ai_context = {
            **user_context,
            "current_step": step.step,
            "captured_data": conversation.state.captured_variables,
            "repeat_count": conversation.state.repeat_count,
            "end_user_id": conversation.end_user_id,
        }
        try:
            ai_response = await self.ai_bridge.classify(step, message.text, agent, ai_context)
        except AIProviderError as e:
            logger.error(f"AI takeover failed on step {step.step}: {e}")
            events = [failed_event, (EventType.AI_PROCESSING_FAILED, {"error": str(e), "original_input": message.text})]
            return self.retry(conversation, step, validation["error"], user_context, events)

        events: List[TrackedEvent] = [
            failed_event,
            (
                EventType.AI_PROCESSING_COMPLETED,
                {
                    "ai_response_type": ai_response.type.value,
                    "confidence": ai_response.confidence,
                    "original_input": message.text,
                },
            ),
        ]
        result = await self.apply_ai_response(conversation, step, message, ai_response, user_context, events)
        result["ai_response"] = ai_response
        return result

    async def apply_ai_response(
        self,
        conversation: Conversation,
        step: AgentFlowStep,
        message: InboundMessage,
        ai_response: AIResponse,
        user_context: Dict[str, Any],
        events: List[TrackedEvent],
    ) -> EngineResult:
        """Turn a classified reply into a transition."""
        kind = ai_response.type
        variables = render_variables(conversation, user_context)

        if kind == AIResponseKind.VALID_INPUT:
            value = ai_response.value if ai_response.value is not None else message.text
            return await self.advance(conversation, step, value, None, user_context, events, ai_message=ai_response.msg)

        if kind == AIResponseKind.TRANSFORM:
            pending = PendingConfirmation(
                value=ai_response.value if ai_response.value is not None else message.text,
                original_input=message.text,
                step=step.step,
                variable=step.variable,
            )
            return _engine_result(
                FlowOutcome.CONFIRMATION_REQUESTED,
                build_confirmation_prompt(ai_response.msg),
                delta={"state": {"pending_confirmation": pending}},
                events=events,
                next_step=step.step,
            )

        if kind == AIResponseKind.RESTART:
            return _engine_result(
                FlowOutcome.RESTART_OFFERED,
                build_restart_prompt(ai_response.msg, step.step),
                delta={"state": {"restart_offered": True}},
                events=events,
                next_step=step.step,
            )

        if kind == AIResponseKind.ESCALATE:
            escalation = EscalationInfo(reason=strings.AI_ESCALATION_REASON, step=step.step)
            events.append((EventType.ESCALATION_TRIGGERED, {"reason": escalation.reason}))
            logger.info(f"Conversation {conversation.id} escalated to a human at step {step.step}")
            return _engine_result(
                FlowOutcome.ESCALATED,
                TextReply(text=ai_response.msg or strings.AI_ESCALATE_DEFAULT),
                delta={"status": ConversationStatus.ESCALATED, "state": {"escalation": escalation}},
                events=events,
            )

        if kind == AIResponseKind.KB_QUERY:
            return _engine_result(FlowOutcome.AI_REPLY, TextReply(text=ai_response.msg), events=events, next_step=step.step)

        # invalidinput, profanity, greeting: answer in the step's own shape.
        delta: Dict[str, Any] = {}
        if kind == AIResponseKind.INVALID_INPUT:
            delta = {"state": {"repeat_count": conversation.state.repeat_count + 1}}
        return _engine_result(
            FlowOutcome.AI_REPLY,
            with_text(render_step_response(step, variables), ai_response.msg),
            delta=delta,
            events=events,
            next_step=step.step,
        )
