# /agentflow/utils/rate_limiter.py

import re
import time
import logging
import uuid
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Protocol, TypedDict

from slowapi import Limiter

from agentflow.config.settings import settings
from agentflow.utils.metrics import rate_limit_rejections_counter
from agentflow.utils.request_utils import get_remote_address

# HTTP-level limiter for the webhook routes, plus the message-level limiter the
# pipeline runs per source and per end user. Both read their quotas from settings.

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.environment != "test",
)

_REPEATED_CHARS_TEMPLATE = r"(.)\1{%d,}"
_SPECIAL_CHARS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')


class RateLimitDecision(TypedDict):
    allowed: bool
    reason: Optional[str]


class RateLimitStore(Protocol):
    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Record a hit for key; False when the key already has `limit` hits in the window."""
        ...


class InMemoryRateLimitStore:
    """
    Sliding windows held in process memory, one deque per key.

    A hit never awaits between pruning and appending, so hits on one event
    loop cannot interleave. Keys idle for longer than their window are swept
    every `sweep_interval` seconds.
    """

    def __init__(self, clock=time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._hits: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep(now)
        hits = self._hits.setdefault(key, deque())
        self._windows[key] = window_seconds
        while hits and now - hits[0] >= window_seconds:
            hits.popleft()
        if len(hits) >= limit:
            return False
        hits.append(now)
        return True

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop keys with no hit inside their window. Returns how many were dropped."""
        now = self._clock() if now is None else now
        self._last_sweep = now
        idle = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self._windows.get(key, 0)]
        for key in idle:
            del self._hits[key]
            self._windows.pop(key, None)
        if idle:
            logger.debug(f"Rate limiter swept {len(idle)} idle keys")
        return len(idle)

    def reset(self, key: Optional[str] = None):
        if key is None:
            self._hits.clear()
            self._windows.clear()
        else:
            self._hits.pop(key, None)
            self._windows.pop(key, None)


class RedisRateLimitStore:
    """
    Sliding windows as Redis sorted sets, shared across workers.
    Prune, add and count run in one MULTI so concurrent workers see each
    other's hits; a hit that lands over the limit is removed again.
    """

    def __init__(self, redis_client, prefix: str = "agentflow:rl:"):
        self.redis = redis_client
        self.prefix = prefix

    async def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        redis_key = f"{self.prefix}{key}"
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, window_seconds)
            _, _, count, _ = await pipe.execute()
        if count > limit:
            await self.redis.zrem(redis_key, member)
            return False
        return True


class RateLimiter:
    """
    Message-level protection run by the webhook pipeline.

    Checks, in order: per-source quota (skipped for trusted sources), per-user
    quota, then the spam heuristics. The first failing check decides the
    reason. Any internal error lets the message through.
    """

    def __init__(
        self,
        store: RateLimitStore,
        source_limit: int = 100,
        user_limit: int = 10,
        window_seconds: int = 60,
        trusted_sources: Iterable[str] = (),
        max_message_length: int = 1000,
        repeated_run_length: int = 10,
        special_char_ratio: float = 0.5,
    ):
        self.store = store
        self.source_limit = source_limit
        self.user_limit = user_limit
        self.window_seconds = window_seconds
        self.trusted_sources = set(trusted_sources)
        self.max_message_length = max_message_length
        self.repeated_chars = re.compile(_REPEATED_CHARS_TEMPLATE % repeated_run_length)
        self.special_char_ratio = special_char_ratio

    @classmethod
    def from_settings(cls, store: RateLimitStore, cfg=settings) -> "RateLimiter":
        return cls(
            store,
            source_limit=cfg.rate_limit_per_minute,
            user_limit=cfg.user_rate_limit_per_minute,
            window_seconds=cfg.rate_limit_window_seconds,
            trusted_sources=cfg.trusted_ips,
            max_message_length=cfg.spam_max_message_length,
            repeated_run_length=cfg.spam_repeated_run_length,
            special_char_ratio=cfg.spam_special_char_ratio,
        )

    def detect_spam(self, text: str) -> Optional[str]:
        if len(text) > self.max_message_length:
            return "message_too_long"
        if self.repeated_chars.search(text):
            return "repeated_characters"
        if len(_SPECIAL_CHARS.findall(text)) > len(text) * self.special_char_ratio:
            return "excessive_special_characters"
        return None

    async def check(self, user_id: Optional[str], text: str, source: Optional[str] = None) -> RateLimitDecision:
        try:
            if not user_id:
                return self._reject("no_user_id")

            if source and source not in self.trusted_sources:
                if not await self.store.hit(f"source:{source}", self.source_limit, self.window_seconds):
                    return self._reject("source_rate_limit_exceeded")

            if not await self.store.hit(f"user:{user_id}", self.user_limit, self.window_seconds):
                logger.warning(f"User rate limit exceeded for user_id: {user_id}")
                return self._reject("user_rate_limit_exceeded")

            spam_reason = self.detect_spam(text or "")
            if spam_reason:
                return self._reject(spam_reason)

            return {"allowed": True, "reason": None}
        except Exception as e:
            logger.error(f"Rate limiting check failed, allowing message: {e}")
            return {"allowed": True, "reason": None}

    @staticmethod
    def _reject(reason: str) -> RateLimitDecision:
        rate_limit_rejections_counter.labels(reason=reason).inc()
        return {"allowed": False, "reason": reason}
