"""
Base Fetcher and Circuit Breaker Infrastructure

Shared plumbing for everything that calls an external HTTP service: the
aiohttp session lifecycle, a circuit breaker that fails fast while the
service is unhealthy, and per-fetcher request metrics.

Key Components:
- CircuitBreaker: Fail-fast pattern for unreliable services
- BaseFetcher: Base class owning the HTTP session and the breaker
"""

import asyncio
import time
import logging
import statistics
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import aiohttp

from ingestion.errors import CircuitOpenError


logger = logging.getLogger(__name__)

RESPONSE_TIME_WINDOW = 100


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Trial requests allowed


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED opens after ``failure_threshold`` failures in a row (any success
    resets the count). OPEN rejects every request until ``recovery_timeout``
    seconds have passed since the last failure, then moves to HALF_OPEN.
    HALF_OPEN closes after ``success_threshold`` successes and reopens on
    the first failure.
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: Thresholds and cool-down
            clock: Monotonic time source, injectable for tests
        """
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.rejected_count = 0

    def _transition(self, state: CircuitState, reason: str):
        if state is self.state:
            return
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log(f"Circuit breaker {self.state.value} -> {state.value}: {reason}")
        self.state = state
        self.success_count = 0
        if state is CircuitState.CLOSED:
            self.failure_count = 0

    def allow_request(self) -> bool:
        """Whether a request may go out now."""
        if self.state is not CircuitState.OPEN:
            return True

        elapsed = self.clock() - self.last_failure_time
        if elapsed < self.config.recovery_timeout:
            self.rejected_count += 1
            return False

        self._transition(CircuitState.HALF_OPEN, f"cool-down of {elapsed:.1f}s elapsed")
        return True

    def record_success(self):
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED, f"{self.success_count} trial requests succeeded")
        else:
            self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, "trial request failed")
        elif self.failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            'state': self.state.value,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'rejected_count': self.rejected_count,
            'last_failure': self.last_failure_time
        }


class BaseFetcher:
    """
    Base class for outbound HTTP clients.

    Subclasses wrap each call in ``_guarded_request`` and decide which
    failures count against the breaker by overriding ``_trips_circuit``.
    """

    user_agent = 'DeriveStreet-Ingest/1.0'

    def __init__(self,
                 circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
                 timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            circuit_breaker_config: Circuit breaker configuration
            timeout: Total request timeout in seconds
            session: Existing HTTP session to reuse; the fetcher does not close it
        """
        self.timeout = timeout
        self.session = session
        self._owns_session = session is None

        self.circuit_breaker = CircuitBreaker(circuit_breaker_config)

        self.request_count = 0
        self.error_count = 0
        self.last_request_time = 0.0
        self.response_times: Deque[float] = deque(maxlen=RESPONSE_TIME_WINDOW)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def _create_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(
            limit=50,
            limit_per_host=20,
            ttl_dns_cache=300,
            enable_cleanup_closed=True
        )
        return aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={'User-Agent': self.user_agent}
        )

    async def start(self):
        """Create the HTTP session if none was supplied."""
        if self.session is None:
            self.session = self._create_session()
            self._owns_session = True
            logger.info(f"{self.__class__.__name__}: HTTP session created (timeout={self.timeout}s)")

    async def stop(self):
        """Close the HTTP session if this fetcher created it."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
            logger.info(f"{self.__class__.__name__}: HTTP session closed")

    def _trips_circuit(self, error: Exception) -> bool:
        """Whether a request failure counts against the circuit breaker."""
        return isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError))

    @asynccontextmanager
    async def _guarded_request(self):
        """
        Enforce the circuit breaker around one request.

        Raises:
            CircuitOpenError: if the breaker rejects the request
        """
        if not self.circuit_breaker.allow_request():
            raise CircuitOpenError(f"{self.__class__.__name__} circuit is open, failing fast")

        started = time.monotonic()
        self.request_count += 1
        try:
            yield
        except Exception as e:
            self.error_count += 1
            if self._trips_circuit(e):
                self.circuit_breaker.record_failure()
            logger.warning(f"{self.__class__.__name__} request failed: {e}")
            raise
        else:
            self.circuit_breaker.record_success()
            self.response_times.append(time.monotonic() - started)
        finally:
            self.last_request_time = time.monotonic()

    async def _make_request(self, method: str, url: str, **kwargs) -> aiohttp.ClientResponse:
        """Issue an HTTP request on the shared session, creating it on first use."""
        if self.session is None:
            await self.start()
        return await self.session.request(method, url, **kwargs)

    def get_metrics(self) -> Dict[str, Any]:
        """Request counters, mean latency and breaker state."""
        return {
            'fetcher_class': self.__class__.__name__,
            'request_count': self.request_count,
            'error_count': self.error_count,
            'error_rate': self.error_count / max(self.request_count, 1),
            'avg_response_time': statistics.mean(self.response_times) if self.response_times else 0,
            'circuit_breaker': self.circuit_breaker.get_stats()
        }
