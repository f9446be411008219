import os

import pytest
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any agentflow imports, so the
# settings module picks it up when it is instantiated.
os.environ.setdefault("ENVIRONMENT", "test")
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from agentflow.models.domain import Agent, Broadcast, Channel, DefaultMessage  # noqa: E402
from agentflow.models.flow import AgentFlowStep, MessageContent, StepOption  # noqa: E402
from agentflow.models.messages import InboundMessage, Participant  # noqa: E402
from agentflow.services.repository import InMemoryRepository  # noqa: E402
from agentflow.utils.lifecycle import build_container  # noqa: E402
from agentflow.utils.rate_limiter import InMemoryRateLimitStore  # noqa: E402
from agentflow.utils.retry import RetryPolicy  # noqa: E402

EMAIL_REGEX = r"^[\w\.-]+@[\w\.-]+\.[a-zA-Z]{2,}$"
META_NUMBER = "15550001111"
KARIX_NUMBER = "15550002222"
USER_PHONE = "919876543210"


def sales_steps():
    return [
        AgentFlowStep(
            agent_id="agent-sales",
            step="step0",
            message_content=MessageContent(text="Welcome to sales! Please share your email address."),
            regex=EMAIL_REGEX,
            mandatory=True,
            variable="email",
            next_possible_steps=["step1"],
        ),
        AgentFlowStep(
            agent_id="agent-sales",
            step="step1",
            type_of_message="quick_reply",
            message_content=MessageContent(
                text="Thanks {{email}}! Would you like a callback?",
                options=[
                    StepOption(title="Yes", postback_text="step2/yes"),
                    StepOption(title="No", postback_text="stop/no"),
                ],
            ),
            variable="callback",
            next_possible_steps=["step2", "stop"],
        ),
        AgentFlowStep(
            agent_id="agent-sales",
            step="step2",
            message_content=MessageContent(text="When should we call you, {{name}}?"),
            mandatory=True,
            variable="call_time",
            purpose="Collect a preferred callback time",
            enable_ai_takeover=True,
            regex=r"^\d{1,2}(am|pm)$",
            next_possible_steps=["stop"],
        ),
    ]


def support_steps():
    return [
        AgentFlowStep(
            agent_id="agent-support",
            step="step0",
            message_content=MessageContent(text="Support here. Please describe your issue."),
            mandatory=True,
            variable="issue",
            next_possible_steps=["stop"],
        ),
    ]


def seed_repository(repository: InMemoryRepository) -> InMemoryRepository:
    repository.add_channel(Channel(
        id="channel-meta",
        business_id="biz-1",
        provider_name="meta",
        phone_number=META_NUMBER,
        config={"access_token": "test-token", "phone_number_id": "123456"},
    ))
    repository.add_channel(Channel(
        id="channel-karix",
        business_id="biz-1",
        provider_name="karix",
        phone_number=KARIX_NUMBER,
        config={"api_key": "karix-key", "phone_numbers": [{"number": KARIX_NUMBER, "is_primary": True}]},
    ))
    repository.add_agent(
        Agent(id="agent-sales", name="Sales", business_id="biz-1", key_words=["sales", "buy"]),
        sales_steps(),
    )
    repository.add_agent(
        Agent(id="agent-support", name="Support", business_id="biz-1", key_words=["support", "help"]),
        support_steps(),
    )
    repository.add_broadcast(Broadcast(
        id="bc-1",
        name="Spring campaign",
        business_id="biz-1",
        type="outbound",
        agent_mapping={"sales": "agent-sales", "support": "agent-support"},
    ))
    repository.add_broadcast(Broadcast(
        id="bc-empty",
        name="Newsletter",
        business_id="biz-1",
        default_message=DefaultMessage(content="Thanks for reading our newsletter!"),
    ))
    return repository


class RecordingDelivery:
    """Delivery double that keeps every payload it was asked to send."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, channel, end_user, payload, sender):
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.sent.append({"channel": channel, "end_user": end_user, "payload": payload, "sender": sender})
        return f"wamid.{len(self.sent)}"

    async def close(self):
        pass

    @property
    def last(self):
        return self.sent[-1]["payload"] if self.sent else None


def inbound(text: str = "", postback=None, to: str = META_NUMBER, sender: str = USER_PHONE, **fields) -> InboundMessage:
    return InboundMessage(
        text=text,
        postback=postback,
        sender=Participant(phone=sender, name="Jane"),
        receiver=Participant(phone=to),
        service=fields.pop("service", "meta"),
        **fields,
    )


@pytest.fixture
def seed():
    return seed_repository


@pytest.fixture
def repository():
    return seed_repository(InMemoryRepository())


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def zero_delay_policy():
    return RetryPolicy(attempts=3, base_delay=0, timeout=5.0, max_delay=0)


@pytest.fixture
def ai_client():
    """A chat client whose raw completions are set per test."""
    client = AsyncMock()
    client.complete.return_value = '{"type": "invalidinput", "msg": "Please answer like 5pm.", "confidence": 0.9}'
    return client


@pytest.fixture
def build_test_container(delivery, ai_client, zero_delay_policy):
    """Builds a container around any repository, seeded or not."""
    def build(repository):
        built = build_container(
            repository=repository,
            delivery=delivery,
            ai_clients={"gpt": ai_client},
            rate_limit_store=InMemoryRateLimitStore(),
            persistence_policy=zero_delay_policy,
        )
        built.pipeline.engine.ai_bridge.policy = zero_delay_policy
        return built
    return build


@pytest.fixture
def container(repository, build_test_container):
    return build_test_container(repository)


@pytest.fixture
def pipeline(container):
    return container.pipeline


@pytest.fixture
def make_message():
    return inbound


@pytest.fixture
def test_client(container):
    """
    Provides a TestClient whose lifespan reuses the test container instead of
    building one from settings.
    """
    from fastapi.testclient import TestClient
    from agentflow.main import app

    app.state.container = container
    with TestClient(app) as client:
        yield client
    del app.state.container


@pytest.fixture
def api_headers():
    from agentflow.config.settings import settings
    return {"X-API-Key": settings.api_key} if settings.api_key else {}
