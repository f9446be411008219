# tests/unit/test_conversation_service.py
import pytest
import pytest_asyncio

from agentflow.config import strings
from agentflow.exceptions import ConversationConflictError, ConversationNotFoundError
from agentflow.models.conversation import Conversation, ConversationState, ConversationStatus
from agentflow.models.domain import EndUser
from agentflow.models.messages import QuickReply, TextReply
from agentflow.services.conversation_service import ConversationService
from agentflow.services.event_tracker import EventTracker, EventType
from agentflow.services.repository import apply_conversation_delta


class TestConversationDelta:

    def test_state_is_merged_field_by_field(self):
        conversation = Conversation(
            end_user_id="u1",
            channel_id="c1",
            state=ConversationState(captured_variables={"email": "a@b.co"}, repeat_count=2),
        )

        updated = apply_conversation_delta(conversation, {"current_step": "step1", "state": {"repeat_count": 0}})

        assert updated.current_step == "step1"
        assert updated.state.repeat_count == 0
        assert updated.state.captured_variables == {"email": "a@b.co"}
        assert updated.updated_at >= conversation.updated_at

    def test_unknown_field_is_rejected(self):
        with pytest.raises(ValueError, match="Unknown conversation field 'metadata'"):
            apply_conversation_delta(Conversation(end_user_id="u1", channel_id="c1"), {"metadata": {}})


class TestInMemoryRepository:

    @pytest.mark.asyncio
    async def test_one_open_conversation_per_user_and_channel(self, repository):
        await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))

        with pytest.raises(ConversationConflictError):
            await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))
        await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c2"))

    @pytest.mark.asyncio
    async def test_closed_conversation_does_not_block_a_new_one(self, repository):
        first = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))
        await repository.patch_conversation(first.id, {"status": ConversationStatus.COMPLETED})

        second = await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))

        assert (await repository.find_active_conversation("u1", "c1")).id == second.id

    @pytest.mark.asyncio
    async def test_patch_missing_conversation(self, repository):
        with pytest.raises(ConversationNotFoundError):
            await repository.patch_conversation("missing", {"current_step": "step1"})

    @pytest.mark.asyncio
    async def test_channel_lookup_by_any_configured_number(self, repository):
        assert (await repository.find_channel_by_phone("+1 555-000-1111")).id == "channel-meta"
        assert (await repository.find_channel_by_phone("15550002222")).id == "channel-karix"
        assert await repository.find_channel_by_phone("000") is None

    @pytest.mark.asyncio
    async def test_list_filters(self, repository):
        await repository.create_conversation(Conversation(end_user_id="u1", channel_id="c1", agent_id="agent-sales"))
        await repository.create_conversation(Conversation(end_user_id="u2", channel_id="c1", agent_id="agent-support"))

        assert len(await repository.list_conversations()) == 2
        assert [c.end_user_id for c in await repository.list_conversations({"agent_id": "agent-support"})] == ["u2"]
        assert await repository.list_conversations({"status": "completed"}) == []


@pytest.fixture
def service(repository):
    return ConversationService(repository, tracker=EventTracker(repository))


@pytest_asyncio.fixture
async def open_conversation(repository):
    repository.add_end_user(EndUser(id="user-1", phone="919876543210", name="Jane", business_id="biz-1"))
    return await repository.create_conversation(Conversation(
        end_user_id="user-1",
        channel_id="channel-meta",
        agent_id="agent-sales",
        broadcast_id="bc-1",
        current_step="step2",
        state=ConversationState(captured_variables={"email": "a@b.co"}, repeat_count=2),
    ))


@pytest.mark.asyncio
async def test_summary(service, open_conversation):
    summary = await service.get_conversation_summary(open_conversation.id)

    assert summary["status"] == "active"
    assert summary["current_step"] == "step2"
    assert summary["user"] == {"id": "user-1", "phone": "919876543210", "name": "Jane"}
    assert summary["agent"] == {"id": "agent-sales", "name": "Sales"}
    assert summary["channel"]["provider"] == "meta"
    assert summary["broadcast"] == {"id": "bc-1", "name": "Spring campaign"}
    assert summary["progress"]["captured_variables"] == {"email": "a@b.co"}
    assert summary["progress"]["needs_attention"] is False


@pytest.mark.asyncio
async def test_summary_flags_repeated_failures(service, repository, open_conversation):
    await repository.patch_conversation(open_conversation.id, {"state": {"repeat_count": 5}})

    summary = await service.get_conversation_summary(open_conversation.id)

    assert summary["progress"]["needs_attention"] is True


@pytest.mark.asyncio
async def test_summary_of_unknown_conversation(service):
    with pytest.raises(ConversationNotFoundError):
        await service.get_conversation_summary("missing")


@pytest.mark.asyncio
async def test_reset_keeps_variables_unless_asked(service, open_conversation):
    kept = await service.reset_conversation_to_step(open_conversation.id, "step1")

    assert kept.current_step == "step1"
    assert kept.status == ConversationStatus.ACTIVE
    assert kept.state.repeat_count == 0
    assert kept.state.captured_variables == {"email": "a@b.co"}
    assert kept.state.last_reset_reason == "manual_reset"

    cleared = await service.reset_conversation_to_step(open_conversation.id, clear_variables=True, reason="operator")

    assert cleared.current_step == "step0"
    assert cleared.state.captured_variables == {}
    assert cleared.state.last_reset_reason == "operator"


@pytest.mark.asyncio
async def test_close_records_reason(service, open_conversation):
    closed = await service.close_conversation(open_conversation.id, "user_left", {"closed_by": "ops"})

    assert closed.status == ConversationStatus.COMPLETED
    assert closed.completed_at is not None
    assert closed.state.completion_reason == "user_left"
    assert closed.state.close_details["closed_by"] == "ops"


@pytest.mark.asyncio
async def test_export(service, open_conversation):
    rows = await service.export_conversation_data({"agent_id": "agent-sales"})

    assert len(rows) == 1
    assert rows[0]["user_phone"] == "919876543210"
    assert rows[0]["agent_name"] == "Sales"
    assert rows[0]["captured_variables"] == {"email": "a@b.co"}
    assert "analytics" in rows[0]

    assert "analytics" not in (await service.export_conversation_data(include_analytics=False))[0]


@pytest.mark.asyncio
async def test_start_broadcast_sends_keyword_buttons(service, repository):
    conversation, payload = await service.start_broadcast_conversation("user-2", "channel-meta", "bc-1")

    assert isinstance(payload, QuickReply)
    assert payload.text == strings.BROADCAST_OPTIONS_PROMPT
    assert [o.title for o in payload.options] == ["sales", "support"]
    stored = await repository.get_conversation(conversation.id)
    assert stored.broadcast_id == "bc-1"
    assert stored.business_id == "biz-1"
    assert stored.state.is_broadcast_conversation is True
    assert [e.type for e in stored.state.analytics.events] == [EventType.CONVERSATION_STARTED.value]


@pytest.mark.asyncio
async def test_start_broadcast_relinks_open_conversation(service, open_conversation):
    conversation, _ = await service.start_broadcast_conversation("user-1", "channel-meta", "bc-empty")

    assert conversation.id == open_conversation.id
    assert conversation.broadcast_id == "bc-empty"
    assert conversation.agent_id is None
    assert conversation.current_step == "step0"
    assert conversation.state.repeat_count == 0
    assert conversation.state.captured_variables == {"email": "a@b.co"}


@pytest.mark.asyncio
async def test_start_broadcast_without_mapping_uses_default_message(service):
    _, payload = await service.start_broadcast_conversation("user-3", "channel-meta", "bc-empty")

    assert isinstance(payload, TextReply)
    assert payload.text == "Thanks for reading our newsletter!"


@pytest.mark.asyncio
async def test_start_unknown_broadcast(service):
    with pytest.raises(ValueError, match="not found"):
        await service.start_broadcast_conversation("user-3", "channel-meta", "nope")


@pytest.mark.asyncio
async def test_flow_definition_and_validation(service):
    definition = await service.get_agent_flow_definition("agent-sales")

    assert definition.agent_name == "Sales"
    assert sorted(definition.steps) == ["step0", "step1", "step2"]
    assert definition.flow_map["step1"] == ["step2", "stop"]
    assert definition.total_steps == 3

    report = await service.validate_agent_flow("agent-sales")
    assert report["is_valid"] is True

    with pytest.raises(ValueError):
        await service.get_agent_flow_definition("agent-missing")
