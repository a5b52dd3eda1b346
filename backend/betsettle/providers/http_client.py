"""Resilient httpx client for result providers.

Every request has a bounded timeout and a few quick retries; the settlement
scheduler owns the long backoff, so retries here stay short. Consecutive
exhausted requests open a circuit breaker that rejects calls until the
recovery window has passed.
"""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("betsettle.http_client")

_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
_NETWORK_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class CircuitOpenError(Exception):
    """Raised instead of calling a provider whose circuit is open."""


class CircuitBreaker:
    """Opens after `failure_threshold` consecutive failures, half-opens after `recovery_timeout` seconds."""

    def __init__(self, name: str = "provider", failure_threshold: int = 3, recovery_timeout: float = 120.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None

    def allow_request(self) -> bool:
        if self.opened_at is None:
            return True
        # Half-open: let one trial request through once the window has passed
        return time.monotonic() - self.opened_at >= self.recovery_timeout

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("[%s] circuit closed", self.name)
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            if self.opened_at is None:
                logger.warning("[%s] circuit OPEN after %d failures", self.name, self.failure_count)
            self.opened_at = time.monotonic()


def _retry_after(response: httpx.Response) -> Optional[float]:
    for header in ("retry-after", "x-ratelimit-retry-after"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return max(float(value), 0.0)
        except ValueError:
            continue
    return None


def _redact(url) -> str:
    """Drop the query string (may carry tokens) before logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    def __init__(
        self,
        name: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        backoff_cap: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._name = name
        self._attempts = max_retries + 1
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)
        self.circuit = CircuitBreaker(name)

    def _backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        delay = _retry_after(response) if response is not None else None
        if delay is None:
            delay = self._backoff_base * (2 ** (attempt - 1))
        return min(delay, self._backoff_cap)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """GET with retries on network errors and retryable statuses.

        Returns the last response when every attempt hit a retryable status;
        re-raises the network error when no attempt got a response.
        """
        if not self.circuit.allow_request():
            raise CircuitOpenError(f"{self._name} circuit open")

        response: Optional[httpx.Response] = None
        for attempt in range(1, self._attempts + 1):
            try:
                response = await self._client.get(url, **kwargs)
            except _NETWORK_ERRORS as exc:
                logger.warning(
                    "[%s] %s on GET %s (attempt %d/%d)",
                    self._name, type(exc).__name__, _redact(url), attempt, self._attempts,
                )
                if attempt == self._attempts:
                    self.circuit.record_failure()
                    raise
                await asyncio.sleep(self._backoff(attempt))
                continue

            if response.status_code not in _RETRY_STATUSES:
                self.circuit.record_success()
                return response

            logger.warning(
                "[%s] HTTP %d on GET %s (attempt %d/%d)",
                self._name, response.status_code, _redact(url), attempt, self._attempts,
            )
            if attempt < self._attempts:
                await asyncio.sleep(self._backoff(attempt, response))

        self.circuit.record_failure()
        logger.error("[%s] giving up on GET %s after %d attempts", self._name, _redact(url), self._attempts)
        return response

    async def aclose(self) -> None:
        await self._client.aclose()
