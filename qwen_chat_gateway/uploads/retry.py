from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from qwen_chat_gateway.errors import UpstreamTransientError

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base, 2*base, 4*base, ... between attempts."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(0, self.max_retries) + 1),
            wait=wait_exponential(
                multiplier=max(0.0, self.base_delay_seconds),
                exp_base=2,
                max=self.max_delay_seconds,
            ),
            retry=retry_if_exception_type(UpstreamTransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        async for attempt in self.retrying():
            with attempt:
                return await operation()
        raise AssertionError("unreachable: tenacity reraises the final error")
