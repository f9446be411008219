# /agentflow/services/event_tracker.py

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from agentflow.models.conversation import AnalyticsEvent, Conversation, ConversationAnalytics, ConversationStatus

# Best-effort analytics. Every tracked event is appended to the conversation's
# analytics log and the derived counters are recomputed. Nothing in here may
# ever raise into the pipeline.

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONVERSATION_STARTED = "conversation_started"
    STEP_COMPLETED = "step_completed"
    VALIDATION_FAILED = "validation_failed"
    VALIDATION_SUCCEEDED = "validation_succeeded"
    FLOW_COMPLETED = "flow_completed"
    FLOW_ABANDONED = "flow_abandoned"
    ERROR_OCCURRED = "error_occurred"
    TIMEOUT_OCCURRED = "timeout_occurred"
    ESCALATION_TRIGGERED = "escalation_triggered"
    AI_PROCESSING_COMPLETED = "ai_processing_completed"
    AI_PROCESSING_FAILED = "ai_processing_failed"
    AGENT_SUBSTITUTED = "agent_substituted"
    CRITICAL_FLOW_ERROR = "critical_flow_error"


# --- Per-conversation derived metrics ---

def calculate_step_counts(events: List[AnalyticsEvent]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for event in events:
        if event.type == EventType.STEP_COMPLETED.value and event.step:
            counts[event.step] = counts.get(event.step, 0) + 1
    return counts


def calculate_completion_rate(events: List[AnalyticsEvent]) -> float:
    """flow_completed events per step_completed event, as a percentage."""
    total_steps = sum(1 for e in events if e.type == EventType.STEP_COMPLETED.value)
    completed = sum(1 for e in events if e.type == EventType.FLOW_COMPLETED.value)
    if total_steps == 0:
        return 0.0
    return completed / total_steps * 100


def calculate_average_response_time(events: List[AnalyticsEvent]) -> float:
    """Mean seconds between each step_completed event and the event before it."""
    times = [
        (events[i].timestamp - events[i - 1].timestamp).total_seconds()
        for i in range(1, len(events))
        if events[i].type == EventType.STEP_COMPLETED.value
    ]
    if not times:
        return 0.0
    return sum(times) / len(times)


def recompute_analytics(events: List[AnalyticsEvent]) -> ConversationAnalytics:
    return ConversationAnalytics(
        events=events,
        total_events=len(events),
        last_event_at=events[-1].timestamp if events else None,
        step_counts=calculate_step_counts(events),
        completion_rate=calculate_completion_rate(events),
        average_response_time=calculate_average_response_time(events),
    )


class EventTracker:
    def __init__(self, repository, enabled: bool = True):
        self.repository = repository
        self.enabled = enabled

    async def track(
        self,
        conversation_id: Optional[str],
        event_type: EventType | str,
        data: Optional[Dict[str, Any]] = None,
        step: Optional[str] = None,
    ) -> bool:
        """
        Append an event to the conversation's analytics log. Returns False instead of raising.
        `step` is the step the event happened on; it defaults to the conversation's current step.
        """
        if not (self.enabled and conversation_id):
            return False
        event_name = getattr(event_type, "value", event_type)
        try:
            conversation = await self.repository.get_conversation(conversation_id)
            if conversation is None:
                logger.warning(f"Conversation not found for analytics: {conversation_id}")
                return False

            events = list(conversation.state.analytics.events)
            events.append(AnalyticsEvent(type=event_name, step=step or conversation.current_step, data=data or {}))
            analytics = recompute_analytics(events)
            await self.repository.patch_conversation(conversation_id, {"state": {"analytics": analytics}})
            logger.debug(f"Tracked event {event_name} for conversation {conversation_id}")
            return True
        except Exception as e:
            logger.error(f"Error tracking conversation event {event_name}: {e}")
            return False


# --- Cross-conversation report ---

def _events(conversation: Conversation) -> List[AnalyticsEvent]:
    return conversation.state.analytics.events


def calculate_step_analytics(conversations: List[Conversation]) -> Dict[str, Dict[str, Any]]:
    step_data: Dict[str, Dict[str, Any]] = {}
    for conversation in conversations:
        for event in _events(conversation):
            if not event.step:
                continue
            entry = step_data.setdefault(event.step, {"total_visits": 0, "completions": 0, "validations_failed": 0})
            entry["total_visits"] += 1
            if event.type == EventType.STEP_COMPLETED.value:
                entry["completions"] += 1
            elif event.type == EventType.VALIDATION_FAILED.value:
                entry["validations_failed"] += 1
    return step_data


def calculate_validation_analytics(conversations: List[Conversation]) -> Dict[str, Any]:
    total = failed = 0
    by_kind: Dict[str, Dict[str, int]] = {}
    for conversation in conversations:
        for event in _events(conversation):
            if event.type not in (EventType.VALIDATION_FAILED.value, EventType.VALIDATION_SUCCEEDED.value):
                continue
            total += 1
            kind = event.data.get("validation_type", "unknown")
            bucket = by_kind.setdefault(kind, {"total": 0, "failed": 0})
            bucket["total"] += 1
            if event.type == EventType.VALIDATION_FAILED.value:
                failed += 1
                bucket["failed"] += 1
    return {
        "total_validations": total,
        "failed_validations": failed,
        "validation_success_rate": (total - failed) / total * 100 if total else 0,
        "validation_types": by_kind,
    }


def calculate_timing_analytics(conversations: List[Conversation]) -> Dict[str, Any]:
    durations: List[float] = []
    step_durations: List[float] = []
    for conversation in conversations:
        if conversation.completed_at:
            durations.append((conversation.completed_at - conversation.created_at).total_seconds())
        events = _events(conversation)
        for i in range(1, len(events)):
            step_durations.append((events[i].timestamp - events[i - 1].timestamp).total_seconds())
    return {
        "average_conversation_duration": sum(durations) / len(durations) if durations else 0,
        "average_step_duration": sum(step_durations) / len(step_durations) if step_durations else 0,
        "total_conversations_with_timing": len(durations),
    }


async def generate_conversation_analytics(repository, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Aggregate report over the conversations matching `filters`."""
    conversations = await repository.list_conversations(filters or {})
    total = len(conversations)

    def count(status: ConversationStatus) -> int:
        return sum(1 for c in conversations if c.status == status)

    completed = count(ConversationStatus.COMPLETED)
    total_steps = sum(
        1 for c in conversations for e in _events(c) if e.type == EventType.STEP_COMPLETED.value
    )

    agent_performance: Dict[str, Dict[str, Any]] = {}
    for conversation in conversations:
        if not conversation.agent_id:
            continue
        perf = agent_performance.get(conversation.agent_id)
        if perf is None:
            agent = await repository.get_agent(conversation.agent_id)
            perf = agent_performance[conversation.agent_id] = {
                "agent_name": agent.name if agent and agent.name else "Unknown",
                "total_conversations": 0,
                "completed_conversations": 0,
                "completion_rate": 0.0,
            }
        perf["total_conversations"] += 1
        if conversation.status == ConversationStatus.COMPLETED:
            perf["completed_conversations"] += 1
        perf["completion_rate"] = perf["completed_conversations"] / perf["total_conversations"] * 100

    return {
        "generated_at": datetime.utcnow().isoformat(),
        "total_conversations": total,
        "completed_conversations": completed,
        "active_conversations": count(ConversationStatus.ACTIVE),
        "abandoned_conversations": count(ConversationStatus.ABANDONED),
        "escalated_conversations": count(ConversationStatus.ESCALATED),
        "completion_rate": completed / total * 100 if total else 0,
        "average_steps_per_conversation": total_steps / total if total else 0,
        "agent_performance": agent_performance,
        "step_analytics": calculate_step_analytics(conversations),
        "validation_analytics": calculate_validation_analytics(conversations),
        "timing_analytics": calculate_timing_analytics(conversations),
    }


def generate_recommendations(analytics: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Improvement suggestions derived from an analytics report."""
    recommendations: List[Dict[str, Any]] = []

    completion_rate = analytics.get("completion_rate", 0)
    if completion_rate < 70:
        recommendations.append({
            "type": "completion_rate",
            "priority": "high",
            "title": "Low Completion Rate",
            "description": f"Only {completion_rate:.1f}% of conversations are being completed.",
            "suggestions": [
                "Review steps where users commonly drop off",
                "Simplify validation requirements",
                "Reduce the number of steps in your flow",
                "Improve error messages and guidance",
            ],
        })

    validation = analytics.get("validation_analytics") or {}
    if validation.get("total_validations") and validation.get("validation_success_rate", 100) < 80:
        recommendations.append({
            "type": "validation",
            "priority": "medium",
            "title": "High Validation Failure Rate",
            "description": "Users are frequently failing validation checks.",
            "suggestions": [
                "Review regex patterns for user-friendliness",
                "Provide clearer input examples",
                "Add help text for complex validation requirements",
                "Consider making some fields optional",
            ],
        })

    average_steps = analytics.get("average_steps_per_conversation", 0)
    if average_steps > 8:
        recommendations.append({
            "type": "flow_length",
            "priority": "medium",
            "title": "Long Conversation Flow",
            "description": f"Average of {average_steps:.1f} steps per conversation may be too long.",
            "suggestions": [
                "Consider breaking long flows into multiple shorter ones",
                "Remove unnecessary steps",
                "Combine related questions",
                "Use conditional logic to skip irrelevant steps",
            ],
        })

    for performance in (analytics.get("agent_performance") or {}).values():
        if performance["completion_rate"] < 60:
            recommendations.append({
                "type": "agent_performance",
                "priority": "high",
                "title": f"Poor Performance: {performance['agent_name']}",
                "description": f"Agent has only {performance['completion_rate']:.1f}% completion rate.",
                "suggestions": [
                    "Review and optimize agent flow design",
                    "Check for confusing or problematic steps",
                    "Update validation patterns",
                    "Consider user feedback and common failure points",
                ],
            })

    return recommendations
