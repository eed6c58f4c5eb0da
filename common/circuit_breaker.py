"""
Per-provider circuit breakers for outbound payment provider API calls.

Reconciliation reads transfer lists from Stripe, Paystack and Flutterwave.
When a provider keeps failing, its breaker opens and further fetches fail
fast with CircuitBreakerException until reset_timeout has passed; then one
half-open probe decides whether to close again.
"""
import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5   # consecutive failures that open the circuit
    reset_timeout: float = 60.0  # seconds open before a half-open probe
    success_threshold: int = 3   # half-open successes needed to close
    timeout: float = 10.0        # per-call limit

class CircuitBreakerException(Exception):
    """Raised instead of calling a provider whose circuit is open"""

class CircuitBreaker:

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.last_state_change = time.time()
        self._lock = threading.Lock()

    def _move_to(self, state: CircuitState, reason: str):
        self.state = state
        self.success_count = 0
        if state == CircuitState.CLOSED:
            self.failure_count = 0
        self.last_state_change = time.time()
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"⚡ Circuit {self.name} -> {state.value}: {reason}")

    def _admit(self):
        with self._lock:
            if self.state != CircuitState.OPEN:
                return
            waited = time.time() - self.last_failure_time
            if waited < self.config.reset_timeout:
                raise CircuitBreakerException(
                    f"Circuit {self.name} is open; retry in {self.config.reset_timeout - waited:.1f}s"
                )
            self._move_to(CircuitState.HALF_OPEN, f"probing after {waited:.1f}s")

    def _on_success(self):
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED, "provider recovered")
            else:
                self.failure_count = 0

    def _on_failure(self, error: BaseException):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, f"probe failed ({type(error).__name__})")
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run func under the breaker. Blocking callables (the HTTP provider
        clients) run in the default executor so the event loop stays free.

        Raises:
            CircuitBreakerException: If the circuit is open
            asyncio.TimeoutError: If the call exceeds config.timeout
        """
        self._admit()
        if asyncio.iscoroutinefunction(func):
            pending = func(*args, **kwargs)
        else:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        try:
            result = await asyncio.wait_for(pending, timeout=self.config.timeout)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def get_state(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "last_failure_time": self.last_failure_time,
                "seconds_in_state": round(time.time() - self.last_state_change, 3),
            }

PROVIDER_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    reset_timeout=30.0,
    success_threshold=2,
    timeout=15.0,
)

_provider_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()

def get_provider_circuit_breaker(provider: str) -> CircuitBreaker:
    """Shared breaker for one provider's API"""
    with _registry_lock:
        breaker = _provider_breakers.get(provider)
        if breaker is None:
            breaker = _provider_breakers[provider] = CircuitBreaker(f"{provider}-api", PROVIDER_CB_CONFIG)
        return breaker

def get_all_circuit_breakers() -> dict:
    return {provider: cb.get_state() for provider, cb in list(_provider_breakers.items())}
