# /agentflow/utils/logging.py

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from agentflow.config.settings import settings

# Every record carries the message context bound by the webhook pipeline
# (provider, end user, channel, inbound message id), whether it was logged
# through structlog or through a stdlib logger.

_configured = False


def _renderer():
    if settings.environment == "development":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(level: Optional[str] = None):
    """Route structlog and stdlib logging through one formatter. Idempotent."""
    global _configured
    if _configured:
        return

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=_renderer(), foreign_pre_chain=shared_processors))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel((level or settings.log_level).upper())

    # Per-request access lines and provider HTTP calls are too chatty at INFO.
    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True


@contextmanager
def message_context(provider: str, end_user_id: str, channel_id: str, message_id: Optional[str] = None) -> Iterator[None]:
    """Bind the inbound message's identifiers to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        provider=provider,
        end_user_id=end_user_id,
        channel_id=channel_id,
        message_id=message_id,
    ):
        yield
