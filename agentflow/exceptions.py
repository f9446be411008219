# /agentflow/exceptions.py

# Exceptions for faults that cannot be expressed as a result code.
# Expected outcomes (validation failures, resolver misses) are returned, not raised.


class AgentFlowError(Exception):
    """Base class for all agentflow errors."""


class ConversationNotFoundError(AgentFlowError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class ConversationConflictError(AgentFlowError):
    """An active conversation already exists for this user and channel."""

    def __init__(self, end_user_id: str, channel_id: str):
        super().__init__(f"Active conversation already exists for {end_user_id}:{channel_id}")
        self.end_user_id = end_user_id
        self.channel_id = channel_id


class AIProviderError(AgentFlowError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class DeliveryError(AgentFlowError):
    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
