"""
Retry with exponential backoff for transient provider failures
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Optional[List[type]] = field(default=None)

    def __post_init__(self):
        if not self.retryable_exceptions:
            self.retryable_exceptions = [Exception]

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, tuple(self.retryable_exceptions))

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before the attempt after `attempt`; jitter keeps it within [delay/2, delay]."""
    delay = min(config.base_delay * config.exponential_base ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """
    Call func (sync or async) up to config.max_attempts times.

    Non-retryable errors propagate immediately; after the last attempt the
    final error propagates unchanged.
    """
    name = getattr(func, "__name__", type(func).__name__)
    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except Exception as e:
            if not config.is_retryable(e):
                logger.warning(f"{name} raised non-retryable {type(e).__name__}: {e}")
                raise
            if attempt >= config.max_attempts:
                logger.error(f"{name} failed after {attempt} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"🔁 {name} attempt {attempt}/{config.max_attempts} failed: {e}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

def provider_retry_config(max_attempts: int = 3, retryable_exceptions: Optional[Sequence[type]] = None) -> RetryConfig:
    """Backoff for read-only provider API calls (reconciliation fetches)."""
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay=1.0,
        max_delay=15.0,
        retryable_exceptions=list(retryable_exceptions) if retryable_exceptions else None,
    )
