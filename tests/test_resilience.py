"""
Unit tests for retry backoff and the provider circuit breaker
"""
import asyncio
import time
import unittest

from common.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerException,
    CircuitState,
    get_all_circuit_breakers,
    get_provider_circuit_breaker,
)
from common.error_handling import ProviderError
from common.retry import RetryConfig, calculate_delay, retry_async


class Flaky:
    def __init__(self, failures, error=ProviderError("paystack", "HTTP 502 from /transfer")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetry(unittest.TestCase):

    def config(self, **kwargs):
        values = dict(max_attempts=3, base_delay=0.001, max_delay=0.002, retryable_exceptions=[ProviderError])
        values.update(kwargs)
        return RetryConfig(**values)

    def test_delay_is_capped_exponential(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        self.assertEqual([calculate_delay(n, config) for n in (1, 2, 3, 4)], [1.0, 2.0, 4.0, 5.0])

    def test_jitter_stays_within_half_and_full_delay(self):
        config = RetryConfig(base_delay=2.0, max_delay=10.0)
        for _ in range(50):
            self.assertTrue(1.0 <= calculate_delay(1, config) <= 2.0)

    def test_retries_until_success(self):
        func = Flaky(failures=2)
        self.assertEqual(asyncio.run(retry_async(func, self.config())), "ok")
        self.assertEqual(func.calls, 3)

    def test_gives_up_after_max_attempts(self):
        func = Flaky(failures=5)
        with self.assertRaises(ProviderError):
            asyncio.run(retry_async(func, self.config()))
        self.assertEqual(func.calls, 3)

    def test_non_retryable_raised_immediately(self):
        func = Flaky(failures=5, error=KeyError("data"))
        with self.assertRaises(KeyError):
            asyncio.run(retry_async(func, self.config()))
        self.assertEqual(func.calls, 1)


class TestCircuitBreaker(unittest.TestCase):

    def setUp(self):
        self.breaker = CircuitBreaker(
            "test-api",
            CircuitBreakerConfig(failure_threshold=2, reset_timeout=0.05, success_threshold=1, timeout=1.0),
        )

    def fail_once(self):
        with self.assertRaises(ProviderError):
            asyncio.run(self.breaker.call(Flaky(failures=1)))

    def test_opens_after_threshold_and_fails_fast(self):
        self.fail_once()
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        self.fail_once()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

        func = Flaky(failures=0)
        with self.assertRaises(CircuitBreakerException):
            asyncio.run(self.breaker.call(func))
        self.assertEqual(func.calls, 0)

    def test_half_open_probe_closes_on_success(self):
        self.fail_once()
        self.fail_once()
        time.sleep(0.06)
        self.assertEqual(asyncio.run(self.breaker.call(Flaky(failures=0))), "ok")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    def test_half_open_probe_failure_reopens(self):
        self.fail_once()
        self.fail_once()
        time.sleep(0.06)
        self.fail_once()
        self.assertEqual(self.breaker.state, CircuitState.OPEN)

    def test_slow_call_times_out(self):
        breaker = CircuitBreaker("slow-api", CircuitBreakerConfig(timeout=0.05))
        with self.assertRaises(asyncio.TimeoutError):
            asyncio.run(breaker.call(time.sleep, 0.5))
        self.assertEqual(breaker.failure_count, 1)

    def test_provider_registry(self):
        breaker = get_provider_circuit_breaker("registry-test")
        self.assertIs(get_provider_circuit_breaker("registry-test"), breaker)
        self.assertEqual(get_all_circuit_breakers()["registry-test"]["state"], "CLOSED")


if __name__ == "__main__":
    unittest.main()
