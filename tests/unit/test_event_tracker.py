# tests/unit/test_event_tracker.py
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

from agentflow.models.conversation import AnalyticsEvent, Conversation, ConversationAnalytics, ConversationState, ConversationStatus
from agentflow.services.event_tracker import (
    EventTracker,
    EventType,
    calculate_average_response_time,
    calculate_completion_rate,
    calculate_step_counts,
    calculate_validation_analytics,
    generate_conversation_analytics,
    generate_recommendations,
)

T0 = datetime(2024, 1, 1, 12, 0, 0)


def event(event_type, seconds=0, step="step0", **data):
    return AnalyticsEvent(type=event_type.value, timestamp=T0 + timedelta(seconds=seconds), step=step, data=data)


class TestDerivedMetrics:

    def test_step_counts(self):
        events = [
            event(EventType.STEP_COMPLETED, step="step0"),
            event(EventType.STEP_COMPLETED, step="step0"),
            event(EventType.STEP_COMPLETED, step="step1"),
            event(EventType.VALIDATION_FAILED, step="step1"),
        ]
        assert calculate_step_counts(events) == {"step0": 2, "step1": 1}

    def test_completion_rate(self):
        events = [event(EventType.STEP_COMPLETED), event(EventType.STEP_COMPLETED), event(EventType.FLOW_COMPLETED)]
        assert calculate_completion_rate(events) == 50.0
        assert calculate_completion_rate([]) == 0.0

    def test_average_response_time(self):
        events = [
            event(EventType.CONVERSATION_STARTED, 0),
            event(EventType.STEP_COMPLETED, 10),
            event(EventType.VALIDATION_FAILED, 15),
            event(EventType.STEP_COMPLETED, 45),
        ]
        assert calculate_average_response_time(events) == 20.0
        assert calculate_average_response_time(events[:1]) == 0.0


@pytest.mark.asyncio
async def test_track_appends_and_recomputes(repository):
    conversation = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1", current_step="step1"))
    tracker = EventTracker(repository)

    assert await tracker.track(conversation.id, EventType.STEP_COMPLETED, {"variable": "email"}) is True
    assert await tracker.track(conversation.id, "flow_completed") is True

    analytics = (await repository.get_conversation(conversation.id)).state.analytics
    assert [e.type for e in analytics.events] == ["step_completed", "flow_completed"]
    assert analytics.events[0].step == "step1"
    assert analytics.events[0].data == {"variable": "email"}
    assert analytics.total_events == 2
    assert analytics.step_counts == {"step1": 1}
    assert analytics.completion_rate == 100.0


@pytest.mark.asyncio
async def test_track_uses_explicit_step(repository):
    conversation = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1", current_step="step1"))

    await EventTracker(repository).track(conversation.id, EventType.STEP_COMPLETED, {"variable": "email"}, step="step0")

    analytics = (await repository.get_conversation(conversation.id)).state.analytics
    assert analytics.events[0].step == "step0"
    assert analytics.step_counts == {"step0": 1}


@pytest.mark.asyncio
async def test_track_never_raises(repository, mocker):
    conversation = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))
    mocker.patch.object(repository, "patch_conversation", AsyncMock(side_effect=ConnectionError("db down")))
    tracker = EventTracker(repository)

    assert await tracker.track(conversation.id, EventType.ERROR_OCCURRED) is False
    assert await tracker.track("missing", EventType.ERROR_OCCURRED) is False
    assert await tracker.track(None, EventType.ERROR_OCCURRED) is False


@pytest.mark.asyncio
async def test_disabled_tracker_is_a_no_op(repository):
    conversation = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))

    assert await EventTracker(repository, enabled=False).track(conversation.id, EventType.STEP_COMPLETED) is False
    assert (await repository.get_conversation(conversation.id)).state.analytics.events == []


def conversation_with(events, status=ConversationStatus.ACTIVE, agent_id="agent-sales", **fields):
    return Conversation(
        end_user_id="u1",
        channel_id="c1",
        agent_id=agent_id,
        status=status,
        state=ConversationState(analytics=ConversationAnalytics(events=events)),
        **fields,
    )


def test_validation_analytics_counts_both_outcomes():
    conversations = [conversation_with([
        event(EventType.VALIDATION_SUCCEEDED, validation_type="regex_match"),
        event(EventType.VALIDATION_FAILED, validation_type="regex_validation_failed"),
        event(EventType.VALIDATION_FAILED, validation_type="regex_validation_failed"),
        event(EventType.STEP_COMPLETED),
    ])]

    report = calculate_validation_analytics(conversations)

    assert report["total_validations"] == 3
    assert report["failed_validations"] == 2
    assert report["validation_success_rate"] == pytest.approx(33.33, rel=1e-3)
    assert report["validation_types"]["regex_validation_failed"] == {"total": 2, "failed": 2}


@pytest.mark.asyncio
async def test_generate_conversation_analytics(repository):
    done = conversation_with(
        [event(EventType.STEP_COMPLETED, 0), event(EventType.STEP_COMPLETED, 30, step="step1"), event(EventType.FLOW_COMPLETED, 31)],
        status=ConversationStatus.COMPLETED,
        created_at=T0,
        completed_at=T0 + timedelta(seconds=60),
    )
    open_one = Conversation(
        end_user_id="u2",
        channel_id="c1",
        agent_id="agent-sales",
        state=ConversationState(analytics=ConversationAnalytics(events=[event(EventType.VALIDATION_FAILED)])),
    )
    await repository.create_conversation(done)
    await repository.create_conversation(open_one)

    report = await generate_conversation_analytics(repository, {"agent_id": "agent-sales"})

    assert report["total_conversations"] == 2
    assert report["completed_conversations"] == 1
    assert report["active_conversations"] == 1
    assert report["completion_rate"] == 50.0
    assert report["average_steps_per_conversation"] == 1.0
    assert report["agent_performance"]["agent-sales"]["agent_name"] == "Sales"
    assert report["step_analytics"]["step0"]["validations_failed"] == 1
    assert report["timing_analytics"]["average_conversation_duration"] == 60.0


def test_recommendations():
    analytics = {
        "completion_rate": 40,
        "validation_analytics": {"total_validations": 10, "validation_success_rate": 50},
        "average_steps_per_conversation": 9,
        "agent_performance": {"a": {"agent_name": "Sales", "completion_rate": 30}},
    }
    types = [r["type"] for r in generate_recommendations(analytics)]
    assert types == ["completion_rate", "validation", "flow_length", "agent_performance"]

    healthy = {"completion_rate": 95, "validation_analytics": {"total_validations": 10, "validation_success_rate": 95}}
    assert generate_recommendations(healthy) == []
