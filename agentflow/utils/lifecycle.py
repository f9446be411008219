# /agentflow/utils/lifecycle.py

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

import redis.asyncio as redis
from fastapi import FastAPI

from agentflow.config.settings import settings
from agentflow.services.agent_resolver import AgentResolver
from agentflow.services.ai_service import AIBridge, build_ai_clients
from agentflow.services.conversation_service import ConversationService
from agentflow.services.event_tracker import EventTracker
from agentflow.services.handoff_service import HandoffNotifier
from agentflow.services.repository import InMemoryRepository
from agentflow.services.webhook_pipeline import WebhookPipeline
from agentflow.services.whatsapp_service import build_provider_router
from agentflow.utils.alerting import AlertingService
from agentflow.utils.logging import setup_logging
from agentflow.utils.rate_limiter import InMemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from agentflow.workflows.engine import FlowEngine

# This file manages the application's lifespan: it wires the services into a
# container on app.state at startup and closes connections on shutdown.

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    repository: object
    pipeline: WebhookPipeline
    conversations: ConversationService
    tracker: EventTracker
    resolver: AgentResolver
    delivery: object
    alerting: AlertingService
    redis_client: Optional[object] = None
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro) -> asyncio.Task:
        """Run webhook work after the response, holding a reference until it finishes."""
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task


def build_repository():
    if settings.persistence_backend == "mongo":
        from agentflow.services.db_service import build_mongo_repository
        return build_mongo_repository()
    return InMemoryRepository()


def build_container(
    repository=None,
    delivery=None,
    ai_clients: Optional[Dict] = None,
    rate_limit_store=None,
    alerting: Optional[AlertingService] = None,
    persistence_policy=None,
) -> ServiceContainer:
    """Wire every service. Arguments override the settings-driven defaults."""
    repository = repository or build_repository()
    alerting = alerting or AlertingService(settings.alerting_webhook_url)

    redis_client = None
    if rate_limit_store is None:
        if settings.rate_limit_backend == "redis":
            redis_client = redis.from_url(settings.redis_url, decode_responses=True)
            rate_limit_store = RedisRateLimitStore(redis_client)
        else:
            rate_limit_store = InMemoryRateLimitStore()

    tracker = EventTracker(repository, enabled=settings.flow.analytics_enabled)
    resolver = AgentResolver(repository, tracker=tracker, alerting=alerting)
    ai_bridge = AIBridge(
        ai_clients if ai_clients is not None else build_ai_clients(),
        repository=repository,
        default_provider=settings.ai_default_provider,
        history_limit=settings.ai_history_limit,
    )
    delivery = delivery or build_provider_router(alerting)
    handoff = HandoffNotifier(AlertingService(settings.handoff_webhook_url) if settings.handoff_webhook_url else None)

    pipeline = WebhookPipeline(
        repository,
        rate_limiter=RateLimiter.from_settings(rate_limit_store),
        resolver=resolver,
        engine=FlowEngine(repository, ai_bridge=ai_bridge),
        delivery=delivery,
        tracker=tracker,
        handoff=handoff,
        persistence_policy=persistence_policy,
    )
    return ServiceContainer(
        repository=repository,
        pipeline=pipeline,
        conversations=ConversationService(repository, tracker),
        tracker=tracker,
        resolver=resolver,
        delivery=delivery,
        alerting=alerting,
        redis_client=redis_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    # Tests install their own container before the app starts.
    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    if container is None:
        container = build_container()
        app.state.container = container
        create_indexes = getattr(container.repository, "create_indexes", None)
        if create_indexes:
            await create_indexes()

    logger.info(f"Application startup complete (persistence={settings.persistence_backend}, rate_limit={settings.rate_limit_backend}).")

    yield  # Application is now running

    logger.info("Application shutting down...")
    if container.background_tasks:
        await asyncio.gather(*container.background_tasks, return_exceptions=True)
    close = getattr(container.delivery, "close", None)
    if close:
        await close()
    await container.alerting.cleanup()
    if container.redis_client is not None:
        await container.redis_client.aclose()
    client = getattr(container.repository, "client", None)
    if client is not None:
        client.close()
