# /agentflow/services/db_service.py

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError

from agentflow.config.settings import settings
from agentflow.exceptions import ConversationConflictError, ConversationNotFoundError
from agentflow.models.conversation import Conversation, ConversationState
from agentflow.models.domain import Agent, Broadcast, Channel, EndUser
from agentflow.models.flow import AgentFlowStep
from agentflow.models.messages import DeliveryStatus
from agentflow.services.repository import OPEN_STATUSES
from agentflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

OPEN_STATUS_VALUES = [s.value for s in OPEN_STATUSES]


def _plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


def _conversation_doc(conversation: Conversation) -> Dict[str, Any]:
    doc = conversation.model_dump()
    doc["_id"] = doc.pop("id")
    doc["is_open"] = conversation.status in OPEN_STATUSES
    return doc


def _from_doc(model, doc: Optional[Dict[str, Any]]):
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("is_open", None)
    return model.model_validate(doc)


class MongoRepository:
    """
    MongoDB implementation of ConversationRepository.
    The typed conversation state is stored as one `state` sub-document; patches
    update it with dotted `$set` paths so concurrent field updates do not clobber.
    """

    def __init__(self, mongo_uri: str, database: str, client: Optional[AsyncIOMotorClient] = None):
        try:
            self.client = client or AsyncIOMotorClient(
                mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
            )
            self.db = self.client[database]
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            # One open conversation per (end user, channel).
            ("conversations", [("end_user_id", 1), ("channel_id", 1)],
             {"unique": True, "partialFilterExpression": {"is_open": True}, "name": "one_open_conversation"}),
            ("conversations", [("agent_id", 1), ("created_at", -1)], {}),
            ("conversations", [("status", 1)], {}),
            ("agent_steps", [("agent_id", 1), ("step", 1)], {"unique": True}),
            ("agents", [("business_id", 1)], {}),
            ("end_users", [("phone", 1), ("business_id", 1)], {"unique": True, "name": "one_user_per_phone"}),
            ("channels", [("phone_number", 1)], {}),
            ("delivery_statuses", [("message_id", 1)], {}),
        ]
        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")
        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Conversations ====================

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return _from_doc(Conversation, await self.db.conversations.find_one({"_id": conversation_id}))

    async def find_active_conversation(self, end_user_id: str, channel_id: str) -> Optional[Conversation]:
        doc = await self.db.conversations.find_one(
            {"end_user_id": end_user_id, "channel_id": channel_id, "status": {"$in": OPEN_STATUS_VALUES}},
            sort=[("updated_at", -1)],
        )
        return _from_doc(Conversation, doc)

    async def find_active_conversations_for_user(self, end_user_id: str) -> List[Conversation]:
        cursor = self.db.conversations.find({"end_user_id": end_user_id, "status": {"$in": OPEN_STATUS_VALUES}})
        return [_from_doc(Conversation, doc) async for doc in cursor]

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        try:
            await self.db.conversations.insert_one(_conversation_doc(conversation))
        except DuplicateKeyError:
            database_operations_counter.labels(operation="create_conversation", status="conflict").inc()
            raise ConversationConflictError(conversation.end_user_id, conversation.channel_id)
        database_operations_counter.labels(operation="create_conversation", status="success").inc()
        return conversation

    async def patch_conversation(self, conversation_id: str, delta: Dict[str, Any]) -> Conversation:
        update: Dict[str, Any] = {"updated_at": datetime.utcnow()}
        for key, value in delta.items():
            if key == "state":
                state_patch = value.model_dump() if isinstance(value, ConversationState) else value
                for field, field_value in state_patch.items():
                    update[f"state.{field}"] = _plain(field_value)
            else:
                update[key] = _plain(value)
        if "status" in delta:
            update["is_open"] = str(getattr(delta["status"], "value", delta["status"])) in OPEN_STATUS_VALUES

        doc = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id}, {"$set": update}, return_document=True
        )
        if doc is None:
            database_operations_counter.labels(operation="patch_conversation", status="not_found").inc()
            raise ConversationNotFoundError(conversation_id)
        database_operations_counter.labels(operation="patch_conversation", status="success").inc()
        return _from_doc(Conversation, doc)

    async def list_conversations(self, filters: Optional[Dict[str, Any]] = None) -> List[Conversation]:
        filters = filters or {}
        query: Dict[str, Any] = {}
        for field in ("agent_id", "channel_id", "end_user_id", "broadcast_id", "business_id"):
            if filters.get(field):
                query[field] = filters[field]
        if filters.get("status"):
            query["status"] = str(getattr(filters["status"], "value", filters["status"]))
        created: Dict[str, Any] = {}
        if filters.get("start_date"):
            created["$gte"] = filters["start_date"]
        if filters.get("end_date"):
            created["$lte"] = filters["end_date"]
        if created:
            query["created_at"] = created
        cursor = self.db.conversations.find(query).sort("created_at", 1)
        return [_from_doc(Conversation, doc) async for doc in cursor]

    # ==================== Flow definitions ====================

    async def find_step(self, agent_id: str, step_key: str) -> Optional[AgentFlowStep]:
        return _from_doc(AgentFlowStep, await self.db.agent_steps.find_one({"agent_id": agent_id, "step": step_key}))

    async def list_steps(self, agent_id: str) -> List[AgentFlowStep]:
        cursor = self.db.agent_steps.find({"agent_id": agent_id}).sort("step", 1)
        return [_from_doc(AgentFlowStep, doc) async for doc in cursor]

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return _from_doc(Agent, await self.db.agents.find_one({"_id": agent_id}))

    async def list_agents(self) -> List[Agent]:
        cursor = self.db.agents.find({}).sort("created_at", 1)
        return [_from_doc(Agent, doc) async for doc in cursor]

    async def find_agents_by_business(self, business_id: str) -> List[Agent]:
        cursor = self.db.agents.find({"business_id": business_id}).sort("created_at", 1)
        return [_from_doc(Agent, doc) async for doc in cursor]

    async def find_broadcast(self, broadcast_id: str) -> Optional[Broadcast]:
        return _from_doc(Broadcast, await self.db.broadcasts.find_one({"_id": broadcast_id}))

    # ==================== Users & channels ====================

    async def get_end_user(self, end_user_id: str) -> Optional[EndUser]:
        return _from_doc(EndUser, await self.db.end_users.find_one({"_id": end_user_id}))

    async def find_end_user_by_phone(self, phone: str, business_id: Optional[str] = None) -> Optional[EndUser]:
        query: Dict[str, Any] = {"phone": phone}
        if business_id:
            query["business_id"] = {"$in": [business_id, None]}
        return _from_doc(EndUser, await self.db.end_users.find_one(query))

    async def create_end_user(self, end_user: EndUser) -> EndUser:
        """Insert unless (phone, business_id) already exists; returns the stored user either way."""
        doc = end_user.model_dump()
        doc["_id"] = doc.pop("id")
        query = {"phone": end_user.phone, "business_id": end_user.business_id}
        try:
            await self.db.end_users.update_one(query, {"$setOnInsert": doc}, upsert=True)
        except DuplicateKeyError:
            logger.info(f"End user for {end_user.phone} was created concurrently")
        return _from_doc(EndUser, await self.db.end_users.find_one(query))

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        return _from_doc(Channel, await self.db.channels.find_one({"_id": channel_id}))

    async def find_channel_by_phone(self, phone: str) -> Optional[Channel]:
        doc = await self.db.channels.find_one(
            {"$or": [{"phone_number": phone}, {"config.phone_numbers.number": phone}, {"config.phone_numbers": phone}]}
        )
        return _from_doc(Channel, doc)

    async def record_delivery_status(self, status: DeliveryStatus) -> None:
        try:
            await self.db.delivery_statuses.insert_one(status.model_dump())
        except Exception as e:
            logger.error(f"Failed to store delivery status {status.message_id}: {e}")


def build_mongo_repository() -> MongoRepository:
    return MongoRepository(settings.mongo_uri, settings.mongo_database)
