# /agentflow/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from agentflow.utils.metrics import circuit_state_gauge

# One breaker per delivery provider. While OPEN, sends to that provider fail
# fast with CircuitOpenError; after `timeout` seconds a trial call is let
# through (HALF_OPEN) and `success_threshold` successes close it again.

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitOpenError(Exception):
    def __init__(self, name: str, retry_in: float):
        super().__init__(f"Circuit breaker for {name} is OPEN, retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    def __init__(self, name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()
        circuit_state_gauge.labels(provider=name).set(self.state.value)

    def _transition(self, state: CircuitState):
        if state == self.state:
            return
        logger.warning(f"Delivery circuit '{self.name}': {self.state.name} -> {state.name} (failures={self.failure_count})")
        self.state = state
        circuit_state_gauge.labels(provider=self.name).set(state.value)
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
        elif state == CircuitState.HALF_OPEN:
            self.success_count = 0
        else:
            self.failure_count = 0
            self.opened_at = None

    async def _before_call(self):
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            elapsed = time.monotonic() - self.opened_at
            if elapsed <= self.timeout:
                raise CircuitOpenError(self.name, self.timeout - elapsed)
            self._transition(CircuitState.HALF_OPEN)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            async with self._lock:
                self.failure_count += 1
                if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)
            raise

        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self.failure_count = 0
        return result

    def status(self) -> Dict[str, Any]:
        return {"state": self.state.name.lower(), "failures": self.failure_count}
