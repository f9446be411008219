# tests/unit/test_db_service.py
import pytest
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import DuplicateKeyError

from agentflow.exceptions import ConversationConflictError, ConversationNotFoundError
from agentflow.models.conversation import AgentAssignment, Conversation, ConversationStatus
from agentflow.models.domain import EndUser
from agentflow.services.db_service import MongoRepository


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def mongo(db):
    client = MagicMock()
    client.__getitem__.return_value = db
    return MongoRepository("mongodb://unused", "agentflow_test", client=client)


def stored(conversation: Conversation):
    doc = conversation.model_dump()
    doc["_id"] = doc.pop("id")
    doc["is_open"] = True
    return doc


@pytest.mark.asyncio
async def test_create_maps_id_and_open_flag(mongo, db):
    db.conversations.insert_one = AsyncMock()
    conversation = Conversation(id="conv-1", end_user_id="u1", channel_id="c1")

    await mongo.create_conversation(conversation)

    doc = db.conversations.insert_one.await_args.args[0]
    assert doc["_id"] == "conv-1"
    assert "id" not in doc
    assert doc["is_open"] is True


@pytest.mark.asyncio
async def test_duplicate_open_conversation_is_a_conflict(mongo, db):
    db.conversations.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))

    with pytest.raises(ConversationConflictError):
        await mongo.create_conversation(Conversation(end_user_id="u1", channel_id="c1"))


@pytest.mark.asyncio
async def test_patch_uses_dotted_state_paths(mongo, db):
    conversation = Conversation(id="conv-1", end_user_id="u1", channel_id="c1")
    db.conversations.find_one_and_update = AsyncMock(return_value=stored(conversation))

    await mongo.patch_conversation("conv-1", {
        "status": ConversationStatus.COMPLETED,
        "state": {"repeat_count": 0, "assignment": AgentAssignment(match_kind="exact", keyword="sales")},
    })

    query, update = db.conversations.find_one_and_update.await_args.args
    assert query == {"_id": "conv-1"}
    fields = update["$set"]
    assert fields["state.repeat_count"] == 0
    assert fields["state.assignment"]["keyword"] == "sales"
    assert fields["is_open"] is False
    assert "updated_at" in fields


@pytest.mark.asyncio
async def test_patch_missing_conversation(mongo, db):
    db.conversations.find_one_and_update = AsyncMock(return_value=None)

    with pytest.raises(ConversationNotFoundError):
        await mongo.patch_conversation("missing", {"current_step": "step1"})


@pytest.mark.asyncio
async def test_get_conversation_strips_storage_fields(mongo, db):
    db.conversations.find_one = AsyncMock(return_value=stored(Conversation(id="conv-1", end_user_id="u1", channel_id="c1")))

    conversation = await mongo.get_conversation("conv-1")

    assert conversation.id == "conv-1"
    assert conversation.end_user_id == "u1"


@pytest.mark.asyncio
async def test_health_check(mongo):
    mongo.client.admin.command = AsyncMock(return_value={"ok": 1})
    assert await mongo.health_check() is True

    mongo.client.admin.command = AsyncMock(side_effect=ConnectionError("no server"))
    assert await mongo.health_check() is False


@pytest.mark.asyncio
async def test_create_end_user_returns_existing_on_race(mongo, db):
    winner = {"_id": "user-first", "phone": "919876543210", "business_id": "biz-1", "name": None}
    db.end_users.update_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
    db.end_users.find_one = AsyncMock(return_value=winner)

    end_user = await mongo.create_end_user(EndUser(id="user-second", phone="919876543210", business_id="biz-1"))

    assert end_user.id == "user-first"
    query, update = db.end_users.update_one.await_args.args
    assert query == {"phone": "919876543210", "business_id": "biz-1"}
    assert update["$setOnInsert"]["_id"] == "user-second"
    db.end_users.find_one.assert_awaited_once_with(query)
