# /agentflow/utils/retry.py

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type

import tenacity

# One retry-with-backoff helper shared by every external call site
# (AI provider, persistence patch). Delays grow base, 2*base, 4*base...

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 2.0
    timeout: float = 30.0
    max_delay: float = 60.0


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    **kwargs: Any,
) -> Any:
    """
    Await func(*args, **kwargs) with a per-attempt timeout, retrying on
    `retry_on` (timeouts included) up to policy.attempts times. Errors in
    `give_up_on` are raised immediately.
    The last error is re-raised once attempts are exhausted.
    """
    retryable = tuple(retry_on) + (asyncio.TimeoutError,)
    async for attempt in tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(max(1, policy.attempts)),
        wait=tenacity.wait_exponential(multiplier=policy.base_delay, min=policy.base_delay, max=policy.max_delay),
        retry=tenacity.retry_if_exception_type(retryable) & tenacity.retry_if_not_exception_type(give_up_on),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=policy.timeout)
