# /agentflow/services/webhook_pipeline.py

import time
import uuid
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import structlog

from agentflow.config import strings
from agentflow.config.settings import settings
from agentflow.exceptions import AgentFlowError, ConversationConflictError
from agentflow.models.conversation import Conversation, ConversationState, ConversationStatus, conversation_key
from agentflow.models.domain import Channel, EndUser
from agentflow.models.flow import ENTRY_STEP
from agentflow.models.messages import InboundMessage, TextReply
from agentflow.services.agent_resolver import AgentResolver, ResolverCode
from agentflow.services.conversation_service import broadcast_default_reply
from agentflow.services.event_tracker import EventTracker, EventType
from agentflow.services.handoff_service import HandoffNotifier
from agentflow.services.provider_adapters import NormalizedWebhook
from agentflow.utils.locks import KeyedLock
from agentflow.utils.logging import message_context
from agentflow.utils.metrics import active_conversations_gauge, inbound_messages_counter, pipeline_latency_histogram
from agentflow.utils.rate_limiter import RateLimiter
from agentflow.utils.retry import RetryPolicy, retry_async
from agentflow.workflows.engine import EngineResult, FlowEngine, FlowOutcome, render_variables
from agentflow.workflows.templates import OutboundPayload, personalize_response

logger = logging.getLogger(__name__)
log = structlog.get_logger(__name__)

# Resolver failures that mean "this broadcast cannot route you there".
_STRICT_FAILURES = (ResolverCode.AGENT_NOT_IN_MAPPING, ResolverCode.AGENT_INACTIVE_OR_NOT_FOUND)


class PipelineCode(str, Enum):
    SUCCESS = "SUCCESS"
    CHANNEL_NOT_FOUND = "CHANNEL_NOT_FOUND"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AGENT_LOADING_FAILED = "AGENT_LOADING_FAILED"
    STEP_NOT_FOUND = "STEP_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    PROCESSING_FAILED = "PROCESSING_FAILED"


class PipelineResult(TypedDict, total=False):
    success: bool
    code: PipelineCode
    reason: Optional[str]
    conversation_id: Optional[str]
    response_type: Optional[str]
    outcome: Optional[str]
    reply: Optional[OutboundPayload]
    processing_time: float


def _result(code: PipelineCode, success: bool = False, **fields: Any) -> PipelineResult:
    result: PipelineResult = {"success": success, "code": code}
    result.update(fields)  # type: ignore[typeddict-item]
    return result


def error_reply(error_type: str) -> TextReply:
    return TextReply(text=strings.SYSTEM_ERROR_MESSAGES.get(error_type, strings.SYSTEM_GENERAL_ERROR))


class WebhookPipeline:
    """
    Drives one inbound message from the webhook to the reply:

        channel lookup -> end user -> rate limit -> per-conversation lock
        -> conversation -> agent resolution -> flow engine -> persist
        -> analytics -> delivery

    Messages for the same (end user, channel) are processed one at a time;
    different conversations run concurrently.
    """

    def __init__(
        self,
        repository,
        rate_limiter: RateLimiter,
        resolver: AgentResolver,
        engine: FlowEngine,
        delivery,
        tracker: EventTracker,
        handoff: Optional[HandoffNotifier] = None,
        keyed_lock: Optional[KeyedLock] = None,
        persistence_policy: Optional[RetryPolicy] = None,
    ):
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.resolver = resolver
        self.engine = engine
        self.delivery = delivery
        self.tracker = tracker
        self.handoff = handoff
        self.keyed_lock = keyed_lock or KeyedLock()
        self.persistence_policy = persistence_policy or RetryPolicy(
            attempts=settings.persistence_max_attempts,
            base_delay=settings.persistence_base_delay_seconds,
            timeout=settings.persistence_timeout_seconds,
        )

    # ==================== Entry points ====================

    async def process_webhook(self, webhook: NormalizedWebhook, source: Optional[str] = None) -> Dict[str, Any]:
        """Handle everything one provider webhook carried. Messages are processed in order."""
        statuses = await self.process_statuses(webhook["statuses"])
        results = [await self.process_message(message, source) for message in webhook["messages"]]
        return {"messages": results, "statuses": statuses}

    async def process_statuses(self, statuses) -> int:
        recorded = 0
        for status in statuses:
            try:
                await self.repository.record_delivery_status(status)
                recorded += 1
            except Exception as e:
                logger.error(f"Failed to record delivery status {status.message_id}: {e}")
        return recorded

    async def process_message(self, message: InboundMessage, source: Optional[str] = None) -> PipelineResult:
        started = time.monotonic()
        channel: Optional[Channel] = None
        end_user: Optional[EndUser] = None
        try:
            channel = await self.find_channel(message)
            if channel is None:
                logger.warning(f"No channel for receiver {message.receiver.phone} (channel_id={message.channel_id})")
                return self._finish(message, started, _result(PipelineCode.CHANNEL_NOT_FOUND, reason="channel_not_found"))

            end_user = await self.find_or_create_end_user(message, channel)

            decision = await self.rate_limiter.check(end_user.id, message.text, source)
            if not decision["allowed"]:
                log.warning("message_rejected", end_user_id=end_user.id, reason=decision["reason"])
                existing = await self.repository.find_active_conversation(end_user.id, channel.id)
                if existing:
                    await self.tracker.track(existing.id, EventType.ERROR_OCCURRED, {"error": "rate_limited", "reason": decision["reason"]})
                return self._finish(message, started, _result(PipelineCode.RATE_LIMIT_EXCEEDED, reason=decision["reason"]))

            key = conversation_key(end_user.id, channel.id)
            active_conversations_gauge.inc()
            try:
                with message_context(message.service, end_user.id, channel.id, message.message_id):
                    async with self.keyed_lock(key):
                        result = await self._process_locked(message, channel, end_user)
            finally:
                active_conversations_gauge.dec()
            return self._finish(message, started, result)

        except Exception as e:
            logger.error(f"Webhook pipeline failed for message {message.message_id}: {e}", exc_info=True)
            if channel and end_user:
                existing = await self._safe_active_conversation(end_user.id, channel.id)
                if existing:
                    await self.tracker.track(existing.id, EventType.CRITICAL_FLOW_ERROR, {"error": str(e)})
                await self.deliver(channel, end_user, error_reply("general_error"), message, existing.id if existing else None)
            return self._finish(message, started, _result(PipelineCode.PROCESSING_FAILED, reason="processing_failed"))

    # ==================== Lookups ====================

    async def find_channel(self, message: InboundMessage) -> Optional[Channel]:
        if message.channel_id:
            channel = await self.repository.get_channel(message.channel_id)
            if channel:
                return channel
        if message.receiver.phone:
            return await self.repository.find_channel_by_phone(message.receiver.phone)
        return None

    async def find_or_create_end_user(self, message: InboundMessage, channel: Channel) -> EndUser:
        phone = message.sender.phone or ""
        async with self.keyed_lock(f"end_user:{channel.business_id}:{phone}"):
            end_user = await self.repository.find_end_user_by_phone(phone, channel.business_id)
            if end_user:
                return end_user
            # create_end_user is a conditional insert; another worker may already own the phone.
            end_user = await self.repository.create_end_user(EndUser(
                id=str(uuid.uuid4()),
                phone=phone,
                name=message.sender.name or None,
                business_id=channel.business_id,
            ))
            logger.info(f"Using end user {end_user.id} for {phone}")
            return end_user

    async def find_or_create_conversation(self, message: InboundMessage, channel: Channel, end_user: EndUser):
        """Returns (conversation, created)."""
        existing = await self.repository.find_active_conversation(end_user.id, channel.id)
        if existing:
            if message.broadcast_id and existing.broadcast_id != message.broadcast_id and not existing.agent_id:
                existing = await self.repository.patch_conversation(
                    existing.id,
                    {"broadcast_id": message.broadcast_id, "state": {"broadcast_id": message.broadcast_id, "is_broadcast_conversation": True}},
                )
            return existing, False

        conversation = Conversation(
            end_user_id=end_user.id,
            channel_id=channel.id,
            broadcast_id=message.broadcast_id,
            business_id=channel.business_id,
            current_step=ENTRY_STEP,
            state=ConversationState(
                broadcast_id=message.broadcast_id,
                is_broadcast_conversation=bool(message.broadcast_id),
            ),
        )
        try:
            conversation = await self.repository.create_conversation(conversation)
        except ConversationConflictError:
            # Lost a race with another worker; use the conversation it created.
            existing = await self.repository.find_active_conversation(end_user.id, channel.id)
            if existing is None:
                raise
            return existing, False
        logger.info(f"Created conversation {conversation.id} for user {end_user.id} on channel {channel.id}")
        return conversation, True

    async def _safe_active_conversation(self, end_user_id: str, channel_id: str) -> Optional[Conversation]:
        try:
            return await self.repository.find_active_conversation(end_user_id, channel_id)
        except Exception as e:
            logger.error(f"Active conversation lookup failed after pipeline error: {e}")
            return None

    # ==================== Core ====================

    async def _process_locked(self, message: InboundMessage, channel: Channel, end_user: EndUser) -> PipelineResult:
        conversation, created = await self.find_or_create_conversation(message, channel, end_user)
        user_context = {"name": end_user.name, "phone": end_user.phone, "end_user_id": end_user.id}

        resolution = await self.resolver.resolve(conversation, channel.business_id, message.text)
        if not resolution["success"]:
            return await self._resolution_failed(resolution, conversation, channel, end_user, message)
        conversation = resolution["conversation"]
        agent = resolution["agent"]

        if created or resolution.get("newly_assigned"):
            entry_step = await self.repository.find_step(agent.id, ENTRY_STEP)
            if entry_step is None:
                return await self._step_missing(conversation, agent.id, ENTRY_STEP, channel, end_user, message)
            engine_result = self.engine.start(conversation, entry_step, user_context)
            handled_step = ENTRY_STEP
        else:
            step = await self.repository.find_step(agent.id, conversation.current_step)
            if step is None:
                return await self._step_missing(conversation, agent.id, conversation.current_step, channel, end_user, message)
            engine_result = await self.engine.process(conversation, step, message, agent, user_context)
            handled_step = step.step

        conversation = await self.persist(conversation, engine_result)
        await self.track_events(conversation.id, engine_result, handled_step)

        if engine_result["outcome"] == FlowOutcome.ESCALATED and self.handoff:
            reason = conversation.state.escalation.reason if conversation.state.escalation else strings.AI_ESCALATION_REASON
            await self.handoff.notify(conversation, reason, message.text)

        # Step prompts were personalized when the engine rendered them; a second
        # pass would expand tokens that users typed into captured answers.
        reply = engine_result["payload"]
        await self.deliver(channel, end_user, reply, message, conversation.id)

        outcome = engine_result["outcome"]
        code = PipelineCode.VALIDATION_FAILED if outcome == FlowOutcome.RETRY else PipelineCode.SUCCESS
        if outcome == FlowOutcome.ERROR:
            code = PipelineCode.PROCESSING_FAILED
        return _result(
            code,
            success=code == PipelineCode.SUCCESS,
            conversation_id=conversation.id,
            response_type=reply.type,
            outcome=outcome.value,
            reply=reply,
        )

    async def persist(self, conversation: Conversation, engine_result: EngineResult) -> Conversation:
        """Write the engine's delta as one patch, retried on transient store errors."""
        delta = dict(engine_result["delta"])
        delta["state"] = {**delta.get("state", {}), "last_user_message_at": datetime.utcnow()}
        return await retry_async(
            self.repository.patch_conversation,
            conversation.id,
            delta,
            policy=self.persistence_policy,
            give_up_on=(AgentFlowError,),
        )

    async def track_events(self, conversation_id: str, engine_result: EngineResult, step: str) -> None:
        """Events belong to the step that handled the message, not the one persisted after it."""
        for event_type, data in engine_result["events"]:
            await self.tracker.track(conversation_id, event_type, data, step=step)

    async def deliver(
        self,
        channel: Channel,
        end_user: EndUser,
        payload: OutboundPayload,
        message: InboundMessage,
        conversation_id: Optional[str] = None,
    ) -> Optional[str]:
        """Send the reply. A failed send is logged and tracked; the state change stands."""
        sender = message.receiver.phone or channel.sender_number()
        try:
            return await self.delivery.send(channel, end_user, payload, sender)
        except Exception as e:
            logger.error(f"Failed to deliver reply to {end_user.phone} on channel {channel.id}: {e}")
            if conversation_id:
                await self.tracker.track(conversation_id, EventType.ERROR_OCCURRED, {"error": "message_sending_failed", "details": str(e)})
            return None

    # ==================== Failure paths ====================

    async def _resolution_failed(self, resolution, conversation: Conversation, channel, end_user, message) -> PipelineResult:
        code = resolution.get("code")
        if code == ResolverCode.NO_AGENT_MAPPING:
            broadcast = resolution.get("broadcast") or await self.repository.find_broadcast(conversation.broadcast_id)
            reply = broadcast_default_reply(broadcast) if broadcast else TextReply(text=strings.BROADCAST_DEFAULT_REPLY)
            reply = personalize_response(reply, render_variables(conversation, {"name": end_user.name, "phone": end_user.phone}))
            await self.deliver(channel, end_user, reply, message, conversation.id)
            now = datetime.utcnow()
            await self.repository.patch_conversation(conversation.id, {
                "status": ConversationStatus.COMPLETED,
                "completed_at": now,
                "state": {
                    "completion_reason": "no_agent_mapping_available",
                    "close_details": {"closed_at": now.isoformat(), "broadcast_id": conversation.broadcast_id},
                },
            })
            logger.info(f"Broadcast {conversation.broadcast_id} has no agent mapping; closed conversation {conversation.id}")
            return _result(
                PipelineCode.SUCCESS,
                success=True,
                conversation_id=conversation.id,
                response_type=reply.type,
                outcome="broadcast_default_message",
                reply=reply,
            )

        error_type = "strict_validation_failed" if code in _STRICT_FAILURES else "agent_not_found"
        log.error(
            "agent_loading_failed",
            conversation_id=conversation.id,
            code=code.value if code else None,
            error=resolution.get("error"),
        )
        await self.tracker.track(conversation.id, EventType.ERROR_OCCURRED, {
            "error": "agent_loading_failed",
            "code": code.value if code else None,
            "details": resolution.get("details", {}),
        })
        reply = error_reply(error_type)
        await self.deliver(channel, end_user, reply, message, conversation.id)
        return _result(
            PipelineCode.AGENT_LOADING_FAILED,
            reason=resolution.get("error"),
            conversation_id=conversation.id,
            response_type=reply.type,
            reply=reply,
        )

    async def _step_missing(self, conversation: Conversation, agent_id: str, step_key: str, channel, end_user, message) -> PipelineResult:
        logger.error(f"Step {step_key} not found for agent {agent_id} (conversation {conversation.id})")
        await self.tracker.track(conversation.id, EventType.ERROR_OCCURRED, {"error": "step_not_found", "step": step_key, "agent_id": agent_id})
        reply = error_reply("step_not_found")
        await self.deliver(channel, end_user, reply, message, conversation.id)
        return _result(
            PipelineCode.STEP_NOT_FOUND,
            reason=f"step {step_key} not found",
            conversation_id=conversation.id,
            response_type=reply.type,
            reply=reply,
        )

    # ==================== Bookkeeping ====================

    @staticmethod
    def _finish(message: InboundMessage, started: float, result: PipelineResult) -> PipelineResult:
        elapsed = time.monotonic() - started
        result["processing_time"] = elapsed
        inbound_messages_counter.labels(provider=message.service, outcome=result["code"].value).inc()
        pipeline_latency_histogram.labels(provider=message.service).observe(elapsed)
        return result
